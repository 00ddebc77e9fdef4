import logging
from typing import Dict, Iterable, Optional

from campusnet.core.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class ProfileDirectory:
    """Read-only projection of user profiles kept by the identity service."""

    def __init__(self, client=None, table: str = "profiles"):
        self._client = client
        self.table = table

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def exists(self, user_id: str) -> bool:
        response = (
            self.client.table(self.table)
            .select("id")
            .eq("id", str(user_id))
            .limit(1)
            .execute()
        )
        return bool(response.data)

    def get_username(self, user_id: str) -> Optional[str]:
        """Get a user username using their id"""
        return self.get_usernames([user_id]).get(str(user_id))

    def get_usernames(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = sorted({str(uid) for uid in user_ids if uid})
        if not ids:
            return {}

        response = (
            self.client.table(self.table)
            .select("id, username")
            .in_("id", ids)
            .execute()
        )
        return {row["id"]: row["username"] for row in response.data or []}


_directory: Optional[ProfileDirectory] = None


def get_profiles() -> ProfileDirectory:
    global _directory
    if _directory is None:
        _directory = ProfileDirectory()
    return _directory
