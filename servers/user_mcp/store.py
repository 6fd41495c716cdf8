# servers/user_mcp/store.py
import json, os, tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from protocol.errors import CorruptStoreError

logger = structlog.get_logger(__name__)

User = Dict[str, Any]


class UserStore:
    """Flat JSON file holding every user, rewritten whole on each create.

    Writes go through a temp file + rename. A create has no await point, so
    one peer process never interleaves two of them; two processes writing
    the same file can still race on the id.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def list_users(self) -> List[User]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            users = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptStoreError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(users, list) or not all(isinstance(u, dict) for u in users):
            raise CorruptStoreError(f"{self.path} does not hold a list of users")
        for u in users:
            uid = u.get("id")
            if not isinstance(uid, int) or isinstance(uid, bool):
                raise CorruptStoreError(f"{self.path} holds a user with a non-integer id: {uid!r}")
        return users

    def create_user(self, name: str, email: str, password: str) -> int:
        users = self.list_users()
        uid = max((u["id"] for u in users), default=0) + 1
        users.append({"id": uid, "name": name, "email": email, "password": password})
        self._write(users)
        logger.info("user.created", user_id=uid, path=str(self.path))
        return uid

    def get_user(self, user_id: int) -> Optional[User]:
        for u in self.list_users():
            if u.get("id") == user_id:
                return u
        return None

    def _write(self, users: List[User]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".users-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(users, indent=2))
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
