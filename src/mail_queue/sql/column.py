# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions for table schemas."""

from __future__ import annotations

from typing import Any

Integer = "INTEGER"
String = "TEXT"
Timestamp = "BIGINT"  # UTC epoch seconds
Boolean = "INTEGER"


class Column:
    """Single column definition.

    Attributes:
        name: Column name.
        type_: SQL type name.
        primary_key: True for the surrogate key column.
        nullable: False adds NOT NULL.
        default: Literal default value, rendered into the DDL.
        unique: True adds a UNIQUE constraint.
        json_encoded: Value is stored as JSON text and decoded on read.
    """

    def __init__(
        self,
        name: str,
        type_: str = String,
        *,
        primary_key: bool = False,
        nullable: bool = True,
        default: Any = None,
        unique: bool = False,
        json_encoded: bool = False,
    ):
        self.name = name
        self.type_ = type_
        self.primary_key = primary_key
        self.nullable = nullable
        self.default = default
        self.unique = unique
        self.json_encoded = json_encoded

    def to_sql(self) -> str:
        """Return the column fragment for CREATE TABLE / ALTER TABLE."""
        parts = [f'"{self.name}"', self.type_]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.unique:
            parts.append("UNIQUE")
        if self.default is not None:
            if isinstance(self.default, str):
                parts.append(f"DEFAULT '{self.default}'")
            else:
                parts.append(f"DEFAULT {int(self.default)}")
        return " ".join(parts)

    def __repr__(self) -> str:
        return f"Column({self.name!r}, {self.type_!r})"


class Columns(dict[str, Column]):
    """Ordered column registry used by ``Table.configure()``."""

    def column(self, name: str, type_: str = String, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self[name] = col
        return col

    def json_columns(self) -> list[str]:
        return [c.name for c in self.values() if c.json_encoded]

    def primary_key(self) -> str | None:
        for col in self.values():
            if col.primary_key:
                return col.name
        return None


__all__ = ["Boolean", "Column", "Columns", "Integer", "String", "Timestamp"]
