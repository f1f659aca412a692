"""admin.py - user lifecycle actions over the admin config document.

The admin config is one versioned document. Actions are applied as a pure
function on a copy, written back with compare-and-swap, and only then is the
credential side effect (register / change password / delete) executed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import AuthError, ConflictError, NotFoundError, ValidationError
from models import AdminConfig, UserAccount, UserSettings

logger = logging.getLogger(__name__)

USER_ACTIONS = (
    'add',
    'ban',
    'unban',
    'setAdmin',
    'cancelAdmin',
    'setAllowRegister',
    'changePassword',
    'deleteUser',
)
SETTINGS_ACTIONS = ('update_settings', 'force_filter', 'allow_disable')
MAX_CAS_ATTEMPTS = 3


class UserActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    target_username: Optional[str] = Field(None, alias='targetUsername')
    target_password: Optional[str] = Field(None, alias='targetPassword')
    allow_register: Any = Field(None, alias='allowRegister')


class Effect(BaseModel):
    kind: str  # register | change_password | delete
    username: str
    password: Optional[str] = None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def operator_role(config: AdminConfig, operator: str, owner: str) -> str:
    if operator == owner:
        return 'owner'
    entry = config.find_user(operator)
    if not entry or entry.role != 'admin':
        raise AuthError('insufficient permissions')
    return 'admin'


def apply_user_action(config: AdminConfig, operator: str, owner: str, req: UserActionRequest,
                      target_registered: bool = False) -> Tuple[AdminConfig, Optional[Effect]]:
    action = req.action
    target = req.target_username
    if not action or action not in USER_ACTIONS:
        raise ValidationError('unknown action')
    if action != 'setAllowRegister' and not target:
        raise ValidationError('missing target username')
    if action not in ('setAllowRegister', 'changePassword', 'deleteUser') and operator == target:
        raise ValidationError('cannot perform this action on yourself')

    config = config.model_copy(deep=True)
    role = operator_role(config, operator, owner)

    if action == 'setAllowRegister':
        if not isinstance(req.allow_register, bool):
            raise ValidationError('allowRegister must be a boolean')
        config.allow_register = req.allow_register
        return config, None

    entry = config.find_user(target)
    target_is_owner = target == owner or (entry is not None and entry.role == 'owner')
    if target_is_owner and action != 'changePassword':
        raise ValidationError('cannot operate on the owner')
    target_is_admin = entry is not None and entry.role == 'admin'

    if action == 'add':
        if entry or target_registered:
            raise ValidationError('user already exists')
        if not req.target_password:
            raise ValidationError('missing target password')
        config.users.append(UserAccount(username=target, role='user', banned=False))
        return config, Effect(kind='register', username=target, password=req.target_password)

    if entry is None and not target_is_owner:
        raise NotFoundError('target user does not exist')

    if action in ('ban', 'unban'):
        if target_is_admin and role != 'owner':
            raise AuthError('only the owner can ban or unban admins')
        entry.banned = action == 'ban'
        return config, None

    if action == 'setAdmin':
        if entry.role == 'admin':
            raise ValidationError('user is already an admin')
        if role != 'owner':
            raise AuthError('only the owner can promote admins')
        entry.role = 'admin'
        return config, None

    if action == 'cancelAdmin':
        if entry.role != 'admin':
            raise ValidationError('user is not an admin')
        if role != 'owner':
            raise AuthError('only the owner can demote admins')
        entry.role = 'user'
        return config, None

    if action == 'changePassword':
        if not req.target_password:
            raise ValidationError('missing new password')
        if target_is_owner:
            raise AuthError('the owner password cannot be changed here')
        if target_is_admin and role != 'owner' and operator != target:
            raise AuthError('only the owner can change another admin password')
        return config, Effect(kind='change_password', username=target, password=req.target_password)

    # deleteUser
    if operator == target:
        raise ValidationError('cannot delete yourself')
    if target_is_admin and role != 'owner':
        raise AuthError('only the owner can delete admins')
    config.users = [u for u in config.users if u.username != target]
    return config, Effect(kind='delete', username=target)


async def load_admin_config(storage, allow_register_default: bool = False) -> AdminConfig:
    config = await storage.get_admin_config()
    if config is None:
        return AdminConfig(allow_register=allow_register_default, users=[], version=0)
    return config


async def mutate_admin_config(storage, allow_register_default: bool,
                              mutate: Callable[[AdminConfig], Awaitable[Tuple[AdminConfig, Optional[Effect]]]]
                              ) -> Tuple[AdminConfig, Optional[Effect]]:
    """Read, mutate and compare-and-swap the admin config, retrying on conflicts."""
    for attempt in range(MAX_CAS_ATTEMPTS):
        current = await load_admin_config(storage, allow_register_default)
        updated, effect = await mutate(current)
        if updated == current:
            return current, effect
        try:
            saved = await storage.set_admin_config(updated, current.version)
        except ConflictError:
            logger.info('admin config changed concurrently (attempt %d)', attempt + 1)
            continue
        return saved, effect
    raise ConflictError()


async def run_effect(storage, effect: Optional[Effect]) -> None:
    if effect is None:
        return
    if effect.kind == 'register':
        await storage.register_user(effect.username, effect.password)
    elif effect.kind == 'change_password':
        await storage.change_password(effect.username, effect.password)
    elif effect.kind == 'delete':
        await storage.delete_user(effect.username)


async def undo_effect_entry(storage, allow_register_default: bool, effect: Effect,
                            previous: Optional[UserAccount]) -> AdminConfig:
    """Put the target's config entry back the way it was before a failed effect."""
    async def mutate(config):
        config = config.model_copy(deep=True)
        if effect.kind == 'register':
            config.users = [u for u in config.users if u.username != effect.username]
        elif effect.kind == 'delete' and previous is not None and config.find_user(effect.username) is None:
            config.users.append(previous)
        return config, None

    saved, _ = await mutate_admin_config(storage, allow_register_default, mutate)
    return saved


async def run_user_action(storage, operator: str, owner: str, req: UserActionRequest,
                          allow_register_default: bool = False) -> AdminConfig:
    previous: Dict[str, Optional[UserAccount]] = {}

    async def mutate(config):
        registered = False
        if req.action == 'add' and req.target_username:
            registered = await storage.check_user_exist(req.target_username)
        previous['entry'] = config.find_user(req.target_username) if req.target_username else None
        return apply_user_action(config, operator, owner, req, target_registered=registered)

    saved, effect = await mutate_admin_config(storage, allow_register_default, mutate)
    try:
        await run_effect(storage, effect)
    except Exception:
        logger.warning('%s for %s failed, restoring admin config entry', effect.kind, effect.username)
        await undo_effect_entry(storage, allow_register_default, effect, previous.get('entry'))
        raise
    return saved


async def append_registered_user(storage, username: str, allow_register_default: bool = False) -> AdminConfig:
    async def mutate(config):
        config = config.model_copy(deep=True)
        if config.find_user(username) is None:
            config.users.append(UserAccount(username=username, role='user'))
        return config, None

    saved, _ = await mutate_admin_config(storage, allow_register_default, mutate)
    return saved


def _merge_settings(current: Optional[UserSettings], changes: Dict[str, Any]) -> UserSettings:
    base = (current or UserSettings()).model_dump()
    try:
        return UserSettings(**{**base, **changes})
    except PydanticValidationError:
        raise ValidationError('invalid settings')


async def apply_settings_action(storage, action: Optional[str], username: Optional[str],
                                changes: Optional[Dict[str, Any]] = None) -> str:
    if action not in SETTINGS_ACTIONS:
        raise ValidationError('unknown action')
    if not username:
        raise ValidationError('missing username')
    current = await storage.get_user_settings(username)

    if action == 'update_settings':
        if not isinstance(changes, dict):
            raise ValidationError('missing settings')
        updated = _merge_settings(current, {**changes, 'last_filter_change': now_iso()})
        message = f'updated settings for {username}'
    elif action == 'force_filter':
        updated = _merge_settings(current, {
            'filter_adult_content': True,
            'can_disable_filter': False,
            'managed_by_admin': True,
            'last_filter_change': now_iso(),
        })
        message = f'forced adult content filter on for {username}'
    else:
        updated = _merge_settings(current, {
            'can_disable_filter': True,
            'managed_by_admin': False,
            'last_filter_change': now_iso(),
        })
        message = f'{username} may now manage their own filter'

    await storage.set_user_settings(username, updated)
    return message


async def list_users_with_settings(storage, config: AdminConfig) -> List[Dict[str, Any]]:
    rows = []
    for record in await storage.get_all_users():
        entry = config.find_user(record.username)
        settings = await storage.get_user_settings(record.username) or UserSettings()
        rows.append({
            'username': record.username,
            'role': entry.role if entry else 'user',
            'banned': entry.banned if entry else False,
            'created_at': record.created_at,
            'filter_adult_content': settings.filter_adult_content,
            'can_disable_filter': settings.can_disable_filter,
            'managed_by_admin': settings.managed_by_admin,
            'last_filter_change': settings.last_filter_change,
        })
    return rows
