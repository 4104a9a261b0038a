# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Schemas for persisted conversation memory."""
from .compaction import (
    ChatCompactionSummary,
    CompactionAnchor,
    CompactionDecision,
    CompactionReason,
    CompactionTimeline,
    KeyTerm,
    SessionCompactionRecord,
    parse_compaction_summary,
    record_from_summary,
    serialize_compaction_summary,
    summary_from_record,
)

__all__ = [
    "ChatCompactionSummary",
    "CompactionAnchor",
    "CompactionDecision",
    "CompactionReason",
    "CompactionTimeline",
    "KeyTerm",
    "SessionCompactionRecord",
    "parse_compaction_summary",
    "record_from_summary",
    "serialize_compaction_summary",
    "summary_from_record",
]
