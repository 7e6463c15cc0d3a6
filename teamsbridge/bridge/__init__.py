"""Synchronization between remote threads and Matrix rooms."""

from teamsbridge.bridge.backoff import PollBackoff, PollBackoffReason, apply_poll_backoff
from teamsbridge.bridge.horizons import ConsumptionHorizonIngestor
from teamsbridge.bridge.poller import ThreadPoller, is_pollable
from teamsbridge.bridge.reactions import (
    MatrixReaction,
    ReactionForwarder,
    ReactionKey,
    ReactionReconciler,
    normalize_reaction_message_id,
    reaction_target_message_id,
)
from teamsbridge.bridge.send import MAX_ATTACHMENT_BYTES, AttachmentSender, MessageSender, TypingForwarder
from teamsbridge.bridge.sync import SyncResult, ThreadSyncEngine
from teamsbridge.bridge.threads import RWLock, ThreadIndex, ThreadRegistration
from teamsbridge.bridge.unread import ReadReceiptSender, UnreadCycleTracker

__all__ = [
    "PollBackoff",
    "PollBackoffReason",
    "apply_poll_backoff",
    "ConsumptionHorizonIngestor",
    "ThreadPoller",
    "is_pollable",
    "MatrixReaction",
    "ReactionForwarder",
    "ReactionKey",
    "ReactionReconciler",
    "normalize_reaction_message_id",
    "reaction_target_message_id",
    "MAX_ATTACHMENT_BYTES",
    "AttachmentSender",
    "MessageSender",
    "TypingForwarder",
    "SyncResult",
    "ThreadSyncEngine",
    "RWLock",
    "ThreadIndex",
    "ThreadRegistration",
    "ReadReceiptSender",
    "UnreadCycleTracker",
]
