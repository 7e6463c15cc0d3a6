"""
Outbound operations from Matrix rooms to remote threads.

MessageSender tracks each text send as a SendIntent so the message can be
recognized when it comes back through the listing. AttachmentSender uploads
a file to cloud storage, shares it and posts the file descriptor.
TypingForwarder relays typing notifications.
"""

from __future__ import annotations

import os
import time
from typing import Callable, Optional

from teamsbridge.auth.state import AuthStateHolder
from teamsbridge.bridge.threads import ThreadIndex
from teamsbridge.exceptions import ContentTooLargeError, ValidationError
from teamsbridge.graph.attachments import build_files_property
from teamsbridge.graph.client import GraphUploadClient
from teamsbridge.logging_config import LogContext, get_logger
from teamsbridge.protocols import SendIntent, SendIntentStore, SendStatus
from teamsbridge.teams.client import ConsumerAPIClient, format_html_content, generate_client_message_id

logger = get_logger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024

THREAD_ID_SUFFIX = "@thread.v2"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _self_user_id(auth: AuthStateHolder) -> str:
    user_id = (auth.teams_user_id() or "").strip()
    if not user_id:
        raise ValidationError("teams user id")
    return user_id


class MessageSender:
    """Send Matrix text messages to the room's thread.

    Args:
        client: Consumer API client.
        intents: Store recording each send's lifecycle.
        threads: Room -> thread lookup.
        auth: Supplies the bridge user's remote id.
    """

    def __init__(
        self,
        client: ConsumerAPIClient,
        intents: SendIntentStore,
        threads: ThreadIndex,
        auth: AuthStateHolder,
    ):
        self.client = client
        self.intents = intents
        self.threads = threads
        self.auth = auth

    async def send_text(self, room_id: str, body: str, event_id: str = "", intent_user_id: str = "") -> str:
        """Send `body` and return the client message id used.

        The send intent moves from pending to accepted or failed. Errors from
        the remote call are re-raised after the intent is updated.
        """
        user_id = _self_user_id(self.auth)
        thread_id = self.threads.require_thread_id(room_id)
        logger.info("teams thread resolved", room_id=room_id, thread_id=thread_id)
        if THREAD_ID_SUFFIX not in thread_id:
            logger.warning("teams thread id missing @thread.v2", thread_id=thread_id)

        client_message_id = generate_client_message_id()
        with LogContext(thread_id=thread_id, room_id=room_id, client_message_id=client_message_id):
            await self.intents.insert(
                SendIntent(
                    thread_id=thread_id,
                    client_message_id=client_message_id,
                    timestamp_ms=_now_ms(),
                    status=SendStatus.PENDING,
                    matrix_event_id=event_id,
                    intent_user_id=intent_user_id,
                )
            )
            logger.info("teams send intent created", status=SendStatus.PENDING.value)
            logger.info("teams send attempt", event_id=event_id)

            error: Optional[Exception] = None
            try:
                status_code = await self.client.send_message(thread_id, body, user_id, client_message_id)
                logger.info("teams send response", status=status_code)
            except Exception as e:
                error = e
                status_code = getattr(e, "status", 0)
                if status_code:
                    logger.info("teams send response", status=status_code)

            new_status = SendStatus.FAILED if error is not None else SendStatus.ACCEPTED
            try:
                await self.intents.update_status(client_message_id, new_status)
            except Exception as e:
                logger.error("failed to update teams send intent", error=str(e), status=new_status.value)
            try:
                await self.intents.clear_intent_ref(client_message_id)
            except Exception as e:
                logger.warning("failed to clear matrix intent mapping", error=str(e))
            logger.info("teams send status transition", status=new_status.value)

        if error is not None:
            raise error
        return client_message_id


class AttachmentSender:
    """Upload a file and post it to a thread as a file message.

    Args:
        graph: Graph client used for the upload and share link.
        client: Consumer API client used for the final message.
        auth: Supplies the bridge user's remote id.
        max_bytes: Size limit for one attachment.
        generate_message_id: Client message id factory.
    """

    def __init__(
        self,
        graph: GraphUploadClient,
        client: ConsumerAPIClient,
        auth: AuthStateHolder,
        max_bytes: int = MAX_ATTACHMENT_BYTES,
        generate_message_id: Callable[[], str] = generate_client_message_id,
    ):
        self.graph = graph
        self.client = client
        self.auth = auth
        self.max_bytes = max_bytes if max_bytes > 0 else MAX_ATTACHMENT_BYTES
        self.generate_message_id = generate_message_id

    async def send_attachment(self, thread_id: str, filename: str, content: bytes, caption: str = "") -> str:
        """Returns the client message id of the posted message.

        Raises:
            ValidationError: Missing thread id, filename, content or user id.
            ContentTooLargeError: The content exceeds max_bytes.
        """
        thread_id = (thread_id or "").strip()
        filename = (filename or "").strip()
        if not thread_id:
            raise ValidationError("thread id")
        if not filename:
            raise ValidationError("filename")
        if not content:
            raise ValidationError("content")
        if len(content) > self.max_bytes:
            raise ContentTooLargeError(len(content), self.max_bytes)
        user_id = _self_user_id(self.auth)

        client_message_id = self.generate_message_id()
        fields = {"filename": filename, "upload_size": len(content)}
        with LogContext(thread_id=thread_id, client_message_id=client_message_id, operation="send_attachment"):
            try:
                uploaded = await self.graph.upload_file(filename, content)
            except Exception as e:
                logger.error("send_attachment failed", error=str(e), phase="upload", **fields)
                raise
            logger.info("upload_success", list_item_unique_id=uploaded.list_item_unique_id, **fields)

            try:
                share = await self.graph.create_share_link(uploaded.list_item_unique_id)
            except Exception as e:
                logger.error("send_attachment failed", error=str(e), phase="create_link", **fields)
                raise
            logger.info("link_created", list_item_unique_id=uploaded.list_item_unique_id, **fields)

            try:
                files_property = build_files_property(uploaded, share, filename, os.path.splitext(filename)[1])
            except Exception as e:
                logger.error("send_attachment failed", error=str(e), phase="build_files", **fields)
                raise

            html_content = format_html_content(caption) if (caption or "").strip() else ""
            try:
                await self.client.send_attachment_message(
                    thread_id, html_content, files_property, user_id, client_message_id
                )
            except Exception as e:
                logger.error("send_attachment failed", error=str(e), phase="teams_send", **fields)
                raise
            logger.info("teams_send_success", list_item_unique_id=uploaded.list_item_unique_id, **fields)
        return client_message_id


class TypingForwarder:
    def __init__(self, client: ConsumerAPIClient, threads: ThreadIndex, auth: AuthStateHolder):
        self.client = client
        self.threads = threads
        self.auth = auth

    async def send_typing(self, room_id: str) -> None:
        user_id = _self_user_id(self.auth)
        thread_id = self.threads.require_thread_id(room_id)
        logger.info("teams typing attempt", room_id=room_id, thread_id=thread_id)
        try:
            status = await self.client.send_typing(thread_id, user_id)
        except Exception as e:
            logger.warning("teams typing failed", error=str(e), room_id=room_id, thread_id=thread_id)
            raise
        logger.info("teams typing response", room_id=room_id, thread_id=thread_id, status=status)
