"""
File-storage client for chat attachments.

Uploads go to the signed-in user's "Microsoft Teams Chat Files" folder. Small
payloads use one PUT; larger ones use a resumable upload session whose chunk
loop is driven by the server's nextExpectedRanges. The session URL is
pre-authorized, so chunk PUTs carry no bearer token.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Type
from urllib.parse import quote, urlencode

import aiohttp

from teamsbridge.auth.state import AuthStateHolder
from teamsbridge.config import UploadConfig
from teamsbridge.exceptions import (
    GraphAPIError,
    GraphChunkUploadError,
    GraphCreateLinkError,
    GraphDriveItemContentError,
    GraphDriveItemError,
    GraphUploadError,
    GraphUploadSessionError,
    ResponseShapeError,
    ValidationError,
)
from teamsbridge.executor import HTTPResponse, PreparedRequest, RequestExecutor, classify_status
from teamsbridge.http_client import GRAPH_ERROR_SNIPPET_BYTES
from teamsbridge.logging_config import LogContext

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_UPLOAD_BASE_URL = f"{GRAPH_BASE_URL}/me/drive/root:/Microsoft Teams Chat Files"
DRIVE_ITEM_SELECT = "id,name,size,sharepointIds,parentReference"

# Sub-delims stay literal in path segments; "/" and spaces are escaped
_PATH_SAFE = "!$&'()*+,;=:@~"


def path_escape(segment: str) -> str:
    return quote(segment, safe=_PATH_SAFE)


@dataclass
class UploadedDriveItem:
    drive_item_id: str
    list_item_unique_id: str
    site_url: str
    file_name: str = ""
    size: int = 0


@dataclass
class CreatedShareLink:
    share_id: str
    share_url: str


@dataclass
class DriveItemContent:
    content: bytes
    content_type: str = ""


def parse_next_expected_start(range_value: str) -> int:
    """Start offset of a "12345-" or "12345-67890" range.

    Raises:
        ResponseShapeError: The range is not in either form.
    """
    value = (range_value or "").strip()
    head, sep, _tail = value.partition("-")
    if not sep or not head.isdigit():
        raise ResponseShapeError(f"invalid nextExpectedRanges value: {value!r}", "nextExpectedRanges")
    return int(head)


def parse_drive_item(payload: Any) -> UploadedDriveItem:
    """Build an UploadedDriveItem, requiring the sharepoint identifiers."""
    if not isinstance(payload, dict):
        raise ResponseShapeError("drive item response is not an object")
    item_id = str(payload.get("id") or "").strip()
    if not item_id:
        raise ResponseShapeError("upload response missing id", "id")
    list_item_id = str((payload.get("sharepointIds") or {}).get("listItemUniqueId") or "").strip()
    if not list_item_id:
        raise ResponseShapeError(
            "upload response missing sharepointIds.listItemUniqueId", "sharepointIds.listItemUniqueId"
        )
    parent = payload.get("parentReference") or {}
    site_url = str((parent.get("sharepointIds") or {}).get("siteUrl") or "").strip()
    if not site_url:
        raise ResponseShapeError(
            "upload response missing parentReference.sharepointIds.siteUrl",
            "parentReference.sharepointIds.siteUrl",
        )
    return UploadedDriveItem(
        drive_item_id=item_id,
        list_item_unique_id=list_item_id,
        site_url=site_url,
        file_name=str(payload.get("name") or "").strip(),
        size=int(payload.get("size") or 0),
    )


def _json_body(response: HTTPResponse, operation: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ResponseShapeError(f"{operation}: response is not JSON") from e
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ResponseShapeError(
            f"{operation}: expected a JSON object, got {type(payload).__name__}"
        )
    return payload


class GraphUploadClient:
    """Upload, share and download files through the file-storage API.

    Args:
        session: aiohttp session; create it with UPLOAD_TIMEOUT for large files.
        auth: Holder supplying the Graph access token.
        config: Size limits and chunk size.
        executor: Optional executor; defaults to the standard retry budget.
        upload_base_url: Folder URL uploads are placed under.
        graph_base_url: API root for drive item and link calls.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        auth: AuthStateHolder,
        config: Optional[UploadConfig] = None,
        executor: Optional[RequestExecutor] = None,
        upload_base_url: str = DEFAULT_UPLOAD_BASE_URL,
        graph_base_url: str = GRAPH_BASE_URL,
    ):
        self.auth = auth
        self.config = config or UploadConfig()
        self.executor = executor or RequestExecutor(session)
        self.upload_base_url = upload_base_url.rstrip("/")
        self.graph_base_url = graph_base_url.rstrip("/")

    def _bearer(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.auth.graph_token()}"}

    async def _execute(self, request: PreparedRequest, error_type: Type[GraphAPIError]) -> HTTPResponse:
        return await self.executor.execute(
            request, classify_status(error_type, GRAPH_ERROR_SNIPPET_BYTES)
        )

    # =========================================================================
    # Upload
    # =========================================================================

    async def upload_file(self, filename: str, content: bytes) -> UploadedDriveItem:
        """Upload `content` as `filename`, choosing direct or chunked upload by size."""
        filename = (filename or "").strip()
        if not filename:
            raise ValidationError("upload filename")
        if not content:
            raise ValidationError("upload content")
        if len(content) <= self.config.small_file_limit:
            return await self._upload_small(filename, content)
        upload_url = await self.create_upload_session(filename)
        return await self.upload_in_chunks(upload_url, content)

    async def _upload_small(self, filename: str, content: bytes) -> UploadedDriveItem:
        query = urlencode(
            {"@microsoft.graph.conflictBehavior": "rename", "select": "*,sharepointIds"}
        )
        url = f"{self.upload_base_url}/{path_escape(filename)}:/content?{query}"
        headers = {**self._bearer(), "Content-Type": "application/octet-stream"}
        logger.debug(f"Uploading {len(content)} bytes in one request")
        response = await self._execute(
            PreparedRequest("PUT", url, headers, content, lambda: content), GraphUploadError
        )
        return parse_drive_item(_json_body(response, "graph upload"))

    async def create_upload_session(self, filename: str) -> str:
        """Open a resumable upload session and return its pre-authorized URL."""
        filename = (filename or "").strip()
        if not filename:
            raise ValidationError("upload filename")
        url = f"{self.upload_base_url}/{path_escape(filename)}:/createUploadSession"
        request = PreparedRequest.with_json(
            "POST", url, {"@microsoft.graph.conflictBehavior": "rename"}, self._bearer()
        )
        response = await self._execute(request, GraphUploadSessionError)
        payload = _json_body(response, "graph create upload session")
        upload_url = str(payload.get("uploadUrl") or "").strip()
        if not upload_url:
            raise ResponseShapeError("upload session response missing uploadUrl", "uploadUrl")
        return upload_url

    async def upload_in_chunks(self, upload_url: str, content: bytes) -> UploadedDriveItem:
        """Drive the chunk state machine until the server returns the final item.

        The next offset always comes from the server: a 202 names the next
        expected range, a 200/201 carries the completed drive item.
        """
        upload_url = (upload_url or "").strip()
        if not upload_url:
            raise ValidationError("upload url")
        if not content:
            raise ValidationError("upload content")
        chunk_size = self.config.chunk_size
        total = len(content)
        offset = 0
        while offset < total:
            end = min(offset + chunk_size, total) - 1
            chunk = content[offset : end + 1]
            headers = {
                "Content-Type": "application/octet-stream",
                "Content-Range": f"bytes {offset}-{end}/{total}",
            }
            response = await self._execute(
                PreparedRequest("PUT", upload_url, headers, chunk, lambda chunk=chunk: chunk),
                GraphChunkUploadError,
            )
            if response.status == 202:
                payload = _json_body(response, "graph chunk upload")
                ranges = payload.get("nextExpectedRanges") or []
                if not ranges or not str(ranges[0]).strip():
                    raise ResponseShapeError(
                        "chunk response missing nextExpectedRanges", "nextExpectedRanges"
                    )
                offset = parse_next_expected_start(str(ranges[0]))
                logger.debug(f"Chunk accepted; next offset {offset} of {total}")
                continue
            return await self._finish_chunked(response)
        raise ResponseShapeError("chunked upload ended without a final drive item")

    async def _finish_chunked(self, response: HTTPResponse) -> UploadedDriveItem:
        payload = _json_body(response, "graph chunk upload")
        try:
            return parse_drive_item(payload)
        except ResponseShapeError:
            # Final session responses may omit sharepointIds
            item_id = str(payload.get("id") or "").strip()
            if not item_id:
                raise
            logger.debug(f"Fetching drive item {item_id} for sharepoint identifiers")
            return await self.get_drive_item(item_id)

    # =========================================================================
    # Drive items and links
    # =========================================================================

    async def get_drive_item(self, drive_item_id: str) -> UploadedDriveItem:
        drive_item_id = (drive_item_id or "").strip()
        if not drive_item_id:
            raise ValidationError("drive item id")
        query = urlencode({"$select": DRIVE_ITEM_SELECT})
        url = f"{self.graph_base_url}/me/drive/items/{path_escape(drive_item_id)}?{query}"
        response = await self._execute(PreparedRequest("GET", url, self._bearer()), GraphDriveItemError)
        return parse_drive_item(_json_body(response, "graph get drive item"))

    async def create_share_link(self, list_item_unique_id: str) -> CreatedShareLink:
        """Create an edit link for an uploaded item (by its list item unique id)."""
        list_item_unique_id = (list_item_unique_id or "").strip()
        if not list_item_unique_id:
            raise ValidationError("list item unique id")
        url = f"{self.graph_base_url}/drive/items/{path_escape(list_item_unique_id)}/createLink"
        request = PreparedRequest.with_json("POST", url, {"type": "edit"}, self._bearer())
        response = await self._execute(request, GraphCreateLinkError)
        payload = _json_body(response, "graph create link")
        share_id = str(payload.get("shareId") or "").strip()
        if not share_id:
            raise ResponseShapeError("createLink response missing shareId", "shareId")
        share_url = str((payload.get("link") or {}).get("webUrl") or "").strip()
        if not share_url:
            raise ResponseShapeError("createLink response missing link.webUrl", "link.webUrl")
        return CreatedShareLink(share_id=share_id, share_url=share_url)

    async def download_drive_item_content(self, drive_item_id: str) -> DriveItemContent:
        """Download an item's bytes, refusing anything above max_download_bytes.

        The declared Content-Length is checked before reading; bodies without
        one are streamed and abandoned once they pass the limit.
        """
        drive_item_id = (drive_item_id or "").strip()
        if not drive_item_id:
            raise ValidationError("drive item id")
        url = f"{self.graph_base_url}/me/drive/items/{path_escape(drive_item_id)}/content"
        request = PreparedRequest(
            "GET", url, self._bearer(), max_body_bytes=self.config.max_download_bytes
        )
        with LogContext(operation="graph download"):
            response = await self._execute(request, GraphDriveItemContentError)
        return DriveItemContent(
            content=response.body, content_type=response.header("Content-Type").strip()
        )


__all__ = [
    "GraphUploadClient",
    "UploadedDriveItem",
    "CreatedShareLink",
    "DriveItemContent",
    "parse_drive_item",
    "parse_next_expected_start",
    "path_escape",
]
