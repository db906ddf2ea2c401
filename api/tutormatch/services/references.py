"""Posting references embedded in free-text decline reasons.

A reference has the shape ``[REF:v1:<posting_id>:<label>]``. The matching
engine only writes and stores these tokens; turning them into links is left to
whoever renders the reason.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

REFERENCE_VERSION = "v1"
_REFERENCE_RE = re.compile(r"\[REF:v1:([A-Za-z0-9_-]+):([^\]]*)\]")
_POSTING_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True, frozen=True)
class PostingReference:
    posting_id: str
    label: str


def format_posting_reference(posting_id: str, label: str) -> str:
    if not _POSTING_ID_RE.match(posting_id):
        raise ValueError(f"posting id cannot be embedded in a reference: {posting_id!r}")
    safe_label = " ".join(label.replace("[", "(").replace("]", ")").split())
    return f"[REF:{REFERENCE_VERSION}:{posting_id}:{safe_label}]"


def extract_posting_references(text: str | None) -> list[PostingReference]:
    if not text:
        return []
    return [PostingReference(posting_id=match.group(1), label=match.group(2)) for match in _REFERENCE_RE.finditer(text)]
