"""Outbound email hand-off for invoice and booking events."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)


class Attachment(dict):
    """``{"filename", "content_type", "content"}`` with ``content`` as bytes."""

    @classmethod
    def pdf(cls, filename: str, content: bytes) -> "Attachment":
        return cls(filename=filename, content_type="application/pdf", content=content)


class EmailDispatcher(Protocol):
    def send(
        self,
        recipient: str,
        template_name: str,
        variables: Mapping[str, Any],
        attachments: Sequence[Attachment] | None = None,
    ) -> dict: ...


class OutboxEmailDispatcher:
    """Record outgoing mail in ``email_outbox`` for a delivery worker to pick up."""

    def __init__(self, conn: sqlite3.Connection, *, sender: str) -> None:
        self.conn = conn
        self.sender = sender

    def send(
        self,
        recipient: str,
        template_name: str,
        variables: Mapping[str, Any],
        attachments: Sequence[Attachment] | None = None,
    ) -> dict:
        if not recipient or "@" not in recipient:
            raise ValueError(f"Invalid recipient address: {recipient!r}")
        attachment_meta = [
            {
                "filename": item["filename"],
                "content_type": item["content_type"],
                "size": len(item["content"]),
            }
            for item in attachments or ()
        ]
        payload = dict(variables)
        payload.setdefault("sender", self.sender)
        cur = self.conn.execute(
            """
            INSERT INTO email_outbox(recipient, template_name, variables, attachments, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                recipient.lower(),
                template_name,
                json.dumps(payload, default=str),
                json.dumps(attachment_meta),
                "queued",
            ),
        )
        logger.info("Queued %s email to %s", template_name, recipient)
        return self.conn.execute(
            "SELECT * FROM email_outbox WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
