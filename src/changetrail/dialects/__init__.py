"""Dialect trigger generators.

One shared TriggerGenerator algorithm, four database backends, and a
registry mapping database kind to generator.
"""

from changetrail.dialects.base import DialectRenderer, RenderScope, TriggerGenerator
from changetrail.dialects.h2 import H2TriggerGenerator
from changetrail.dialects.hana import HanaTriggerGenerator
from changetrail.dialects.postgres import PostgresTriggerGenerator
from changetrail.dialects.registry import get_generator, register_generator, supported_kinds
from changetrail.dialects.sqlite import SqliteTriggerGenerator

__all__ = [
    "DialectRenderer",
    "RenderScope",
    "TriggerGenerator",
    "SqliteTriggerGenerator",
    "PostgresTriggerGenerator",
    "HanaTriggerGenerator",
    "H2TriggerGenerator",
    "get_generator",
    "register_generator",
    "supported_kinds",
]
