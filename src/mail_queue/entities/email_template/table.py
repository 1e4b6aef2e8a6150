# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email templates table: subject and body sources rendered at enqueue time."""

from __future__ import annotations

from typing import Any

from ...sql import Boolean, Integer, String, Table, Timestamp


class EmailTemplatesTable(Table):
    """Email templates table.

    Fields:
    - template_code: Unique code referenced by enqueue requests (e.g. "VERIFY_CODE")
    - subject, content: Jinja2 sources
    - enabled: 0 blocks rendering without deleting the template
    """

    name = "email_templates"

    def configure(self) -> None:
        c = self.columns
        c.column("pk", Integer, primary_key=True)
        c.column("template_code", String, nullable=False, unique=True)
        c.column("name", String)
        c.column("subject", String, nullable=False)
        c.column("content", String, nullable=False)
        c.column("enabled", Boolean, nullable=False, default=1)
        c.column("created_ts", Timestamp)
        c.column("updated_ts", Timestamp)

    @staticmethod
    def _record(template: dict[str, Any], now: int) -> dict[str, Any]:
        return {
            "template_code": template["template_code"],
            "name": template.get("name"),
            "subject": template["subject"],
            "content": template["content"],
            "enabled": 1 if template.get("enabled", True) else 0,
            "created_ts": now,
            "updated_ts": now,
        }

    async def add(self, template: dict[str, Any]) -> None:
        """Insert or replace a template by code."""
        await self.db.adapter.upsert(
            self.name,
            self._record(template, self.now_ts()),
            conflict_columns=["template_code"],
        )

    async def add_if_missing(self, template: dict[str, Any]) -> bool:
        """Insert a template unless its code exists. True when inserted.

        Concurrent callers race on the unique ``template_code``; one inserts.
        """
        inserted = await self.db.adapter.insert_or_ignore(
            self.name,
            self._record(template, self.now_ts()),
            conflict_columns=["template_code"],
        )
        return inserted == 1

    async def get(self, template_code: str) -> dict[str, Any] | None:
        return await self.select_one(where={"template_code": template_code})

    async def list_all(self) -> list[dict[str, Any]]:
        return await self.select(order_by="template_code")

    async def remove(self, template_code: str) -> bool:
        return await self.delete({"template_code": template_code}) > 0


__all__ = ["EmailTemplatesTable"]
