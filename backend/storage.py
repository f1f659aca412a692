"""storage.py - the storage capability interface and its in-memory adapter.

`build_storage` picks the adapter once at startup from STORAGE_TYPE; the SQL
adapter lives in database.py.
"""
import time
from typing import Any, Dict, List, Optional

from auth import get_password_hash, verify_password
from errors import ConflictError, StorageError
from models import AdminConfig, EpisodeSkipConfig, UserRecord, UserSettings


class Storage:
    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    # users
    async def register_user(self, username: str, password: str) -> None:
        raise NotImplementedError

    async def verify_user(self, username: str, password: str) -> bool:
        raise NotImplementedError

    async def check_user_exist(self, username: str) -> bool:
        raise NotImplementedError

    async def change_password(self, username: str, password: str) -> None:
        raise NotImplementedError

    async def delete_user(self, username: str) -> None:
        raise NotImplementedError

    async def get_all_users(self) -> List[UserRecord]:
        raise NotImplementedError

    # settings
    async def get_user_settings(self, username: str) -> Optional[UserSettings]:
        raise NotImplementedError

    async def set_user_settings(self, username: str, settings: UserSettings) -> None:
        raise NotImplementedError

    async def update_user_settings(self, username: str, partial: Dict[str, Any]) -> UserSettings:
        current = await self.get_user_settings(username) or UserSettings()
        merged = UserSettings(**{**current.model_dump(), **partial})
        await self.set_user_settings(username, merged)
        return merged

    # skip configs
    async def get_skip_config(self, username: str, key: str) -> Optional[EpisodeSkipConfig]:
        raise NotImplementedError

    async def set_skip_config(self, username: str, key: str, config: EpisodeSkipConfig) -> None:
        raise NotImplementedError

    async def delete_skip_config(self, username: str, key: str) -> None:
        raise NotImplementedError

    async def get_all_skip_configs(self, username: str) -> Dict[str, EpisodeSkipConfig]:
        raise NotImplementedError

    # admin config
    async def get_admin_config(self) -> Optional[AdminConfig]:
        raise NotImplementedError

    async def set_admin_config(self, config: AdminConfig, expected_version: int) -> AdminConfig:
        """Store `config` only if the stored version still equals `expected_version`."""
        raise NotImplementedError


class MemoryStorage(Storage):
    def __init__(self):
        self._users: Dict[str, Dict[str, Any]] = {}
        self._settings: Dict[str, str] = {}
        self._skip: Dict[str, Dict[str, str]] = {}
        self._admin: Optional[str] = None

    async def register_user(self, username, password):
        self._users[username] = {
            'hashed_password': get_password_hash(password),
            'created_at': int(time.time() * 1000),
        }

    async def verify_user(self, username, password):
        user = self._users.get(username)
        if not user:
            return False
        return verify_password(password, user['hashed_password'])

    async def check_user_exist(self, username):
        return username in self._users

    async def change_password(self, username, password):
        if username not in self._users:
            raise StorageError(f'user {username} has no credentials')
        self._users[username]['hashed_password'] = get_password_hash(password)

    async def delete_user(self, username):
        self._users.pop(username, None)
        self._settings.pop(username, None)
        self._skip.pop(username, None)

    async def get_all_users(self):
        return [UserRecord(username=name, created_at=row['created_at']) for name, row in self._users.items()]

    async def get_user_settings(self, username):
        raw = self._settings.get(username)
        return UserSettings.model_validate_json(raw) if raw else None

    async def set_user_settings(self, username, settings):
        self._settings[username] = settings.model_dump_json()

    async def get_skip_config(self, username, key):
        raw = self._skip.get(username, {}).get(key)
        return EpisodeSkipConfig.model_validate_json(raw) if raw else None

    async def set_skip_config(self, username, key, config):
        self._skip.setdefault(username, {})[key] = config.model_dump_json(by_alias=True)

    async def delete_skip_config(self, username, key):
        self._skip.get(username, {}).pop(key, None)

    async def get_all_skip_configs(self, username):
        return {key: EpisodeSkipConfig.model_validate_json(raw) for key, raw in self._skip.get(username, {}).items()}

    async def get_admin_config(self):
        return AdminConfig.model_validate_json(self._admin) if self._admin else None

    async def set_admin_config(self, config, expected_version):
        stored = await self.get_admin_config()
        current_version = stored.version if stored else 0
        if current_version != expected_version:
            raise ConflictError()
        saved = config.model_copy(update={'version': expected_version + 1})
        self._admin = saved.model_dump_json()
        return saved


def build_storage(settings) -> Storage:
    if settings.storage_type == 'memory':
        return MemoryStorage()
    if settings.storage_type == 'sql':
        from database import SQLStorage
        return SQLStorage(settings.database_url)
    raise StorageError(f'unsupported storage type: {settings.storage_type}')
