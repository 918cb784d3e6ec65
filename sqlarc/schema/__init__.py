"""
Schema module for sqlarc.

Defines the tabular schema model and the type mapping between relational
columns (dynamically typed values, declared affinity) and the physical
column types of the archive.
"""

from .mapper import TypeMapper, TypeObservation
from .types import (
    Affinity,
    ColumnDef,
    Encoding,
    IndexDef,
    PhysicalType,
    TableSchema,
    ValueKind,
    affinity_of,
    quote_identifier,
    value_kind,
)

__all__ = [
    "Affinity",
    "ColumnDef",
    "Encoding",
    "IndexDef",
    "PhysicalType",
    "TableSchema",
    "TypeMapper",
    "TypeObservation",
    "ValueKind",
    "affinity_of",
    "quote_identifier",
    "value_kind",
]
