"""
Builder for the `properties.files` descriptor attached to file messages.
"""

from __future__ import annotations

import json
from typing import Optional

from teamsbridge.exceptions import ValidationError
from teamsbridge.graph.client import CreatedShareLink, UploadedDriveItem, path_escape

CHAT_FILES_FOLDER = "/Documents/Microsoft Teams Chat Files/"
FILE_SCHEMA = "http://schema.skype.com/File"


def build_files_property(
    uploaded: Optional[UploadedDriveItem],
    share: Optional[CreatedShareLink],
    filename: str,
    file_ext: str,
) -> str:
    """Serialize a one-element files descriptor for an uploaded, shared item.

    Args:
        uploaded: Result of GraphUploadClient.upload_file.
        share: Result of GraphUploadClient.create_share_link.
        filename: Display filename.
        file_ext: Extension with or without the leading dot.

    Returns:
        JSON text suitable for `properties.files`.

    Raises:
        ValidationError: A required input is missing or empty.
    """
    if uploaded is None:
        raise ValidationError("uploaded drive item")
    if share is None:
        raise ValidationError("created share link")
    filename = (filename or "").strip()
    if not filename:
        raise ValidationError("filename")
    list_item_id = uploaded.list_item_unique_id.strip()
    if not list_item_id:
        raise ValidationError("uploaded list item unique id")
    drive_item_id = uploaded.drive_item_id.strip()
    if not drive_item_id:
        raise ValidationError("uploaded drive item id")

    site_url = uploaded.site_url.strip()
    file_url = site_url.rstrip("/") + CHAT_FILES_FOLDER + path_escape(filename)
    ext = (file_ext or "").strip()
    if ext.startswith("."):
        ext = ext[1:]

    descriptor = {
        "itemid": list_item_id,
        "fileName": filename,
        "fileType": ext,
        "fileInfo": {
            "itemId": drive_item_id,
            "fileUrl": file_url,
            "siteUrl": site_url,
            "serverRelativeUrl": "",
            "shareUrl": share.share_url.strip(),
            "shareId": share.share_id.strip(),
        },
        "fileChicletState": {"serviceName": "p2p", "state": "active"},
        "@type": FILE_SCHEMA,
        "version": 2,
        "id": list_item_id,
        "baseUrl": site_url,
        "objectUrl": file_url,
        "type": ext,
        "title": filename,
        "state": "active",
    }
    return json.dumps([descriptor], separators=(",", ":"))
