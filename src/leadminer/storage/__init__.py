"""Persistent ledger and file sinks."""

from .ledger import LeadLedger, query_key
from .sinks import JsonlLeadSink, JsonlReviewSink

__all__ = ["JsonlLeadSink", "JsonlReviewSink", "LeadLedger", "query_key"]
