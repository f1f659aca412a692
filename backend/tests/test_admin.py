import unittest

from admin import (
    UserActionRequest,
    apply_settings_action,
    apply_user_action,
    list_users_with_settings,
    load_admin_config,
    run_user_action,
)
from errors import AuthError, ConflictError, NotFoundError, StorageError, ValidationError
from models import AdminConfig, UserAccount, UserSettings
from storage import MemoryStorage

OWNER = 'root'


def _config():
    return AdminConfig(allow_register=False, users=[
        UserAccount(username='alice', role='admin'),
        UserAccount(username='bob', role='user'),
        UserAccount(username='carol', role='admin'),
    ])


def _req(action, target=None, password=None, **extra):
    return UserActionRequest(action=action, target_username=target, target_password=password, **extra)


class ApplyUserActionTests(unittest.TestCase):
    def test_unknown_action(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('explode', 'bob'))

    def test_missing_target(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('ban'))

    def test_plain_user_operator_is_rejected(self) -> None:
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'bob', OWNER, _req('ban', 'alice'))

    def test_add_creates_user_and_register_effect(self) -> None:
        config, effect = apply_user_action(_config(), 'alice', OWNER, _req('add', 'dave', 'pw'))
        entry = config.find_user('dave')
        self.assertEqual((entry.role, entry.banned), ('user', False))
        self.assertEqual((effect.kind, effect.username, effect.password), ('register', 'dave', 'pw'))

    def test_add_does_not_mutate_input(self) -> None:
        original = _config()
        apply_user_action(original, OWNER, OWNER, _req('add', 'dave', 'pw'))
        self.assertIsNone(original.find_user('dave'))

    def test_add_existing_or_registered_user(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('add', 'bob', 'pw'))
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('add', 'dave', 'pw'), target_registered=True)

    def test_add_requires_password(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('add', 'dave'))

    def test_ban_and_unban(self) -> None:
        config, effect = apply_user_action(_config(), 'alice', OWNER, _req('ban', 'bob'))
        self.assertTrue(config.find_user('bob').banned)
        self.assertIsNone(effect)
        config, _ = apply_user_action(config, 'alice', OWNER, _req('unban', 'bob'))
        self.assertFalse(config.find_user('bob').banned)

    def test_ban_missing_user(self) -> None:
        with self.assertRaises(NotFoundError):
            apply_user_action(_config(), OWNER, OWNER, _req('ban', 'ghost'))

    def test_only_owner_bans_admins(self) -> None:
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'alice', OWNER, _req('ban', 'carol'))
        config, _ = apply_user_action(_config(), OWNER, OWNER, _req('ban', 'carol'))
        self.assertTrue(config.find_user('carol').banned)

    def test_ban_owner_is_rejected_for_everyone(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), 'alice', OWNER, _req('ban', OWNER))
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('ban', OWNER))

    def test_set_admin_on_admin_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('setAdmin', 'alice'))

    def test_set_and_cancel_admin_require_owner(self) -> None:
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'alice', OWNER, _req('setAdmin', 'bob'))
        config, _ = apply_user_action(_config(), OWNER, OWNER, _req('setAdmin', 'bob'))
        self.assertEqual(config.find_user('bob').role, 'admin')
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'alice', OWNER, _req('cancelAdmin', 'carol'))
        config, _ = apply_user_action(config, OWNER, OWNER, _req('cancelAdmin', 'bob'))
        self.assertEqual(config.find_user('bob').role, 'user')

    def test_cancel_admin_on_user_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('cancelAdmin', 'bob'))

    def test_self_actions_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), 'alice', OWNER, _req('ban', 'alice'))

    def test_delete_self_is_always_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), 'alice', OWNER, _req('deleteUser', 'alice'))
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('deleteUser', OWNER))

    def test_delete_user(self) -> None:
        config, effect = apply_user_action(_config(), 'alice', OWNER, _req('deleteUser', 'bob'))
        self.assertIsNone(config.find_user('bob'))
        self.assertEqual((effect.kind, effect.username), ('delete', 'bob'))

    def test_only_owner_deletes_admins(self) -> None:
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'alice', OWNER, _req('deleteUser', 'carol'))
        config, _ = apply_user_action(_config(), OWNER, OWNER, _req('deleteUser', 'carol'))
        self.assertIsNone(config.find_user('carol'))

    def test_change_password_rules(self) -> None:
        _, effect = apply_user_action(_config(), 'alice', OWNER, _req('changePassword', 'bob', 'new'))
        self.assertEqual((effect.kind, effect.password), ('change_password', 'new'))
        _, effect = apply_user_action(_config(), 'alice', OWNER, _req('changePassword', 'alice', 'new'))
        self.assertEqual(effect.username, 'alice')
        with self.assertRaises(AuthError):
            apply_user_action(_config(), 'alice', OWNER, _req('changePassword', 'carol', 'new'))
        with self.assertRaises(AuthError):
            apply_user_action(_config(), OWNER, OWNER, _req('changePassword', OWNER, 'new'))
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), OWNER, OWNER, _req('changePassword', 'bob'))

    def test_set_allow_register(self) -> None:
        config, effect = apply_user_action(_config(), 'alice', OWNER, _req('setAllowRegister', allow_register=True))
        self.assertTrue(config.allow_register)
        self.assertIsNone(effect)
        with self.assertRaises(ValidationError):
            apply_user_action(_config(), 'alice', OWNER, _req('setAllowRegister', allow_register='yes'))

    def test_camel_case_payload(self) -> None:
        req = UserActionRequest.model_validate({'action': 'add', 'targetUsername': 'dave', 'targetPassword': 'pw'})
        self.assertEqual((req.target_username, req.target_password), ('dave', 'pw'))


class FlakyStorage(MemoryStorage):
    """Simulates another admin writing between our read and our write."""

    def __init__(self, conflicts):
        super().__init__()
        self.conflicts = conflicts

    async def set_admin_config(self, config, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            current = await load_admin_config(self)
            intruder = current.model_copy(update={'users': current.users + [UserAccount(username=f'x{self.conflicts}')]})
            await super().set_admin_config(intruder, current.version)
        return await super().set_admin_config(config, expected_version)


class RunUserActionTests(unittest.IsolatedAsyncioTestCase):
    async def test_add_registers_credentials(self) -> None:
        storage = MemoryStorage()
        saved = await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        self.assertEqual(saved.version, 1)
        self.assertTrue(await storage.verify_user('dave', 'pw'))
        self.assertIsNotNone((await storage.get_admin_config()).find_user('dave'))

    async def test_delete_removes_credentials(self) -> None:
        storage = MemoryStorage()
        await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        await run_user_action(storage, OWNER, OWNER, _req('deleteUser', 'dave'))
        self.assertFalse(await storage.check_user_exist('dave'))
        self.assertIsNone((await storage.get_admin_config()).find_user('dave'))

    async def test_conflict_is_retried_without_losing_updates(self) -> None:
        storage = FlakyStorage(conflicts=1)
        await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        names = [u.username for u in (await storage.get_admin_config()).users]
        self.assertEqual(names, ['x0', 'dave'])

    async def test_persistent_conflict_surfaces(self) -> None:
        storage = FlakyStorage(conflicts=10)
        with self.assertRaises(ConflictError):
            await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        self.assertFalse(await storage.check_user_exist('dave'))


class FailingRegisterStorage(MemoryStorage):
    def __init__(self):
        super().__init__()
        self.fail_register = True

    async def register_user(self, username, password):
        if self.fail_register:
            raise StorageError('credential store unavailable')
        await super().register_user(username, password)


class FailingDeleteStorage(MemoryStorage):
    async def delete_user(self, username):
        raise StorageError('credential store unavailable')


class FailedEffectTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_register_removes_config_entry(self) -> None:
        storage = FailingRegisterStorage()
        with self.assertRaises(StorageError):
            await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        self.assertIsNone((await storage.get_admin_config()).find_user('dave'))
        self.assertFalse(await storage.check_user_exist('dave'))

    async def test_add_can_be_retried_after_failed_register(self) -> None:
        storage = FailingRegisterStorage()
        with self.assertRaises(StorageError):
            await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        storage.fail_register = False
        await run_user_action(storage, OWNER, OWNER, _req('add', 'dave', 'pw'))
        self.assertTrue(await storage.verify_user('dave', 'pw'))
        self.assertEqual([u.username for u in (await storage.get_admin_config()).users], ['dave'])

    async def test_failed_delete_restores_config_entry(self) -> None:
        storage = FailingDeleteStorage()
        await storage.register_user('bob', 'pw')
        await storage.set_admin_config(AdminConfig(users=[UserAccount(username='bob', banned=True)]), 0)
        with self.assertRaises(StorageError):
            await run_user_action(storage, OWNER, OWNER, _req('deleteUser', 'bob'))
        entry = (await storage.get_admin_config()).find_user('bob')
        self.assertIsNotNone(entry)
        self.assertTrue(entry.banned)


class SettingsActionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.storage = MemoryStorage()
        await self.storage.register_user('bob', 'pw')

    async def test_force_filter(self) -> None:
        await self.storage.set_user_settings('bob', UserSettings(filter_adult_content=False, theme='dark'))
        await apply_settings_action(self.storage, 'force_filter', 'bob')
        stored = await self.storage.get_user_settings('bob')
        self.assertTrue(stored.filter_adult_content)
        self.assertFalse(stored.can_disable_filter)
        self.assertTrue(stored.managed_by_admin)
        self.assertEqual(stored.theme, 'dark')
        self.assertIsNotNone(stored.last_filter_change)

    async def test_allow_disable_on_fresh_user(self) -> None:
        await apply_settings_action(self.storage, 'allow_disable', 'bob')
        stored = await self.storage.get_user_settings('bob')
        self.assertTrue(stored.filter_adult_content)
        self.assertTrue(stored.can_disable_filter)
        self.assertFalse(stored.managed_by_admin)

    async def test_update_settings_merges(self) -> None:
        await apply_settings_action(self.storage, 'update_settings', 'bob', {'language': 'en'})
        stored = await self.storage.get_user_settings('bob')
        self.assertEqual(stored.language, 'en')

    async def test_invalid_settings_and_actions(self) -> None:
        with self.assertRaises(ValidationError):
            await apply_settings_action(self.storage, 'update_settings', 'bob', {'theme': 'neon'})
        with self.assertRaises(ValidationError):
            await apply_settings_action(self.storage, 'nuke', 'bob')
        with self.assertRaises(ValidationError):
            await apply_settings_action(self.storage, 'force_filter', None)

    async def test_list_users_with_settings(self) -> None:
        await apply_settings_action(self.storage, 'force_filter', 'bob')
        config = AdminConfig(users=[UserAccount(username='bob', role='admin', banned=True)])
        rows = await list_users_with_settings(self.storage, config)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['role'], 'admin')
        self.assertTrue(rows[0]['banned'])
        self.assertFalse(rows[0]['can_disable_filter'])


if __name__ == '__main__':
    unittest.main()
