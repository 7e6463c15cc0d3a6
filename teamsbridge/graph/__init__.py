"""File-storage (Graph) client used for chat attachments.

Usage:
    from teamsbridge.graph import GraphUploadClient, build_files_property

    graph = GraphUploadClient(session, auth_holder)
    item = await graph.upload_file("report.pdf", data)
    link = await graph.create_share_link(item.list_item_unique_id)
    files = build_files_property(item, link, "report.pdf", ".pdf")
"""

from teamsbridge.graph.attachments import build_files_property
from teamsbridge.graph.client import (
    CreatedShareLink,
    DriveItemContent,
    GraphUploadClient,
    UploadedDriveItem,
    parse_drive_item,
    parse_next_expected_start,
)

__all__ = [
    "GraphUploadClient",
    "UploadedDriveItem",
    "CreatedShareLink",
    "DriveItemContent",
    "parse_drive_item",
    "parse_next_expected_start",
    "build_files_property",
]
