"""Transformation of legacy thread and reply bodies into target markup."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Final

from .filenames import clean_filename
from .markup import html_to_markdown
from .models import TransformedContent
from .resolver import AttachmentResolver, ResolvedAttachment

if TYPE_CHECKING:
    from .models import AttachmentDescriptor, ContentKind
    from .protocols import TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)

EMBEDDED_ATTACHMENT_PATTERN: Final = re.compile(
    r'<a href="/cfs-file(?:\.ashx)?/__key/(?P<directory>[^/]+)/(?P<path>[^/]+)/(?P<href_filename>.+?)".*?>'
    r"(?P<link_text>.*?)</a>",
    re.IGNORECASE,
)

ATTACHMENTS_DIRECTORY: Final[str] = "telligent.evolution.components.attachments"


def attachment_path(root: Path, attachment: AttachmentDescriptor) -> Path:
    """Location of a dedicated attachment below the attachment root.

    Content id 1234 of forum 7 lives in ``.../00/07/00/00/00/00/12/34/{name}``.
    """
    content_id = f"{attachment.content_id:010d}"
    return root.joinpath(
        ATTACHMENTS_DIRECTORY,
        f"{attachment.application_type_id:02d}",
        f"{attachment.application_id:02d}",
        f"{attachment.application_content_type_id:02d}",
        *(content_id[i : i + 2] for i in range(0, len(content_id), 2)),
        clean_filename(attachment.filename),
    )


class ContentTransformer:
    """Turns a legacy HTML body into target markup with uploaded attachments.

    Embedded ``/cfs-file/__key/...`` links are replaced by uploads found with
    the fuzzy resolver, the body is converted to Markdown, and a dedicated
    attachment of the thread or reply is appended unless it was already
    embedded.
    """

    _target: TargetPlatform
    _root: Path | None
    _resolver: AttachmentResolver | None
    _convert: Callable[[str | None], str | None]
    uploaded_files_count: int
    missing_files_count: int

    def __init__(
        self,
        target: TargetPlatform,
        file_base_dir: Path | None,
        *,
        converter: Callable[[str | None], str | None] = html_to_markdown,
    ) -> None:
        self._target = target
        self._root = file_base_dir
        self._resolver = AttachmentResolver(file_base_dir) if file_base_dir else None
        self._convert = converter
        self.uploaded_files_count = 0
        self.missing_files_count = 0

    def transform(
        self,
        body: str | None,
        user_id: int,
        kind: ContentKind,
        attachment: AttachmentDescriptor | None = None,
        *,
        context: str = "",
    ) -> str:
        """Build the raw markup of a topic or reply.

        Args:
            body: Legacy HTML body
            user_id: Target id of the author, owner of created uploads
            kind: Whether the body belongs to a topic or a reply
            attachment: Dedicated attachment of the row, if any
            context: Context for log messages (e.g., "topic 12")

        Returns:
            Markup for the target platform
        """
        content = self.replace_embedded_attachments(body or "", user_id)
        content.raw = self._convert(content.raw) or ""

        if attachment is None or self._root is None:
            return content.raw

        return self._append_attachment(content, user_id, attachment, context or kind)

    def replace_embedded_attachments(self, body: str, user_id: int) -> TransformedContent:
        """Replace embedded attachment links with uploads.

        Links whose file cannot be found are removed from the body.
        """
        content = TransformedContent(raw=body)
        if self._resolver is None:
            return content

        def replace(match: re.Match[str]) -> str:
            resolved = self._resolve_embedded(match)

            if not resolved.found or not resolved.path.is_file():
                self.missing_files_count += 1
                logger.warning(f"Could not find file: {resolved.path}")
                return ""

            upload = self._target.create_upload(user_id, resolved.path, resolved.filename)
            if upload is None:
                logger.warning(f"Target refused upload of {resolved.path}")
                return ""

            self.uploaded_files_count += 1
            content.embedded_paths.add(str(resolved.path))
            content.upload_ids.add(upload.id)
            return self._target.html_for_upload(upload, resolved.filename)

        content.raw = EMBEDDED_ATTACHMENT_PATTERN.sub(replace, body)
        return content

    def _resolve_embedded(self, match: re.Match[str]) -> ResolvedAttachment:
        assert self._resolver is not None  # checked by caller

        directory, path = match["directory"], match["path"]
        resolved = self._resolver.resolve(directory, path, match["href_filename"])
        if resolved.found and resolved.path.is_file():
            return resolved

        link_text = match["link_text"].strip()
        if not link_text:
            return resolved
        return self._resolver.resolve(directory, path, link_text)

    def _append_attachment(
        self,
        content: TransformedContent,
        user_id: int,
        attachment: AttachmentDescriptor,
        context: str,
    ) -> str:
        assert self._root is not None  # checked by caller

        if attachment.is_remote:
            return f"{content.raw}\n{attachment.filename}"

        path = attachment_path(self._root, attachment)
        if str(path) in content.embedded_paths:
            return content.raw

        if not path.is_file():
            self.missing_files_count += 1
            logger.warning(f"Could not find file for {context}: {path}")
            return content.raw

        upload = self._target.create_upload(user_id, path, attachment.filename)
        if upload is None or upload.id in content.upload_ids:
            return content.raw

        self.uploaded_files_count += 1
        return f"{content.raw}\n{self._target.html_for_upload(upload, attachment.filename)}"
