"""Avatar import and suspensions for migrated users."""

from __future__ import annotations

import datetime as dt
import logging
import re
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Final
from urllib.parse import urlparse

import requests

from .exceptions import TargetError
from .utils import is_in_future, parse_datetime

if TYPE_CHECKING:
    from .models import CreatedUser
    from .protocols import TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)

LOCAL_AVATAR_PATTERN: Final = re.compile(
    r"\A~/.*(?P<directory>communityserver-components-(?:selectable)?avatars)/(?P<path>[^/]+)/(?P<filename>.+)",
    re.IGNORECASE,
)
REMOTE_AVATAR_PATTERN: Final = re.compile(r"\Ahttps?://", re.IGNORECASE)

_DOWNLOAD_TIMEOUT_SECONDS: Final[int] = 30


def local_avatar_path(root: Path, avatar_url: str) -> Path | None:
    """Location of an avatar stored in the Telligent file store, if it is one.

    ``~/cfs-file/__key/communityserver-components-avatars/00-00-12/me.png``
    lives in ``communityserver.components.avatars/00/00/12/me.png``.
    """
    match = LOCAL_AVATAR_PATTERN.match(avatar_url)
    if match is None:
        return None
    return root.joinpath(match["directory"].replace("-", "."), *match["path"].split("-"), match["filename"])


class AvatarImporter:
    """Imports avatars from the file store or from remote URLs."""

    _target: TargetPlatform
    _root: Path | None
    _session: requests.Session

    def __init__(
        self,
        target: TargetPlatform,
        file_base_dir: Path | None,
        session: requests.Session | None = None,
    ) -> None:
        self._target = target
        self._root = file_base_dir
        self._session = session or requests.Session()

    def import_avatar(self, user: CreatedUser, avatar_url: str | None) -> None:
        if self._root is None or not avatar_url or "anonymous" in avatar_url:
            return

        path = local_avatar_path(self._root, avatar_url)
        if path is not None:
            if path.is_file():
                self._target.create_avatar(user, path)
            else:
                logger.warning(f"Could not find avatar: {path}")
        elif REMOTE_AVATAR_PATTERN.match(avatar_url):
            self._import_remote(user, avatar_url)

    def _import_remote(self, user: CreatedUser, avatar_url: str) -> None:
        # A remote avatar that cannot be fetched or stored just means no avatar
        suffix = Path(urlparse(avatar_url).path).suffix
        try:
            response = self._session.get(avatar_url, timeout=_DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
            with tempfile.TemporaryDirectory(prefix="telligent_avatar_") as temp_dir:
                path = Path(temp_dir) / f"avatar{suffix}"
                path.write_bytes(response.content)
                self._target.create_avatar(user, path)
        except (requests.RequestException, OSError, TargetError):
            logger.debug(f"Ignoring remote avatar of user {user.id}: {avatar_url}")


def suspend_if_banned(
    target: TargetPlatform,
    user: CreatedUser,
    banned_until: str | dt.datetime | None,
    ban_reason: str | None,
    *,
    now: dt.datetime,
) -> bool:
    """Suspend a user whose legacy ban has not expired. Returns True if suspended."""
    if not banned_until:
        return False

    until = parse_datetime(banned_until)
    if until is None:
        logger.warning(f"Cannot parse ban end '{banned_until}' of user {user.id}")
        return False

    if not is_in_future(until, now):
        return False

    target.suspend_user(user, until, ban_reason)
    return True
