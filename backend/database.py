import json
import time
from databases import Database
from sqlalchemy import create_engine, MetaData, Table, Column, String, Text, Integer, BigInteger, PrimaryKeyConstraint

from auth import get_password_hash, verify_password
from errors import ConflictError, StorageError
from models import AdminConfig, EpisodeSkipConfig, UserRecord, UserSettings
from storage import Storage

ADMIN_CONFIG_ID = 1

metadata = MetaData()

users = Table(
    'users', metadata,
    Column('username', String, primary_key=True),
    Column('hashed_password', String, nullable=False),
    Column('created_at', BigInteger, nullable=True),
)

user_settings = Table(
    'user_settings', metadata,
    Column('username', String, primary_key=True),
    Column('value', Text, nullable=False),
)

skip_configs = Table(
    'skip_configs', metadata,
    Column('username', String, nullable=False),
    Column('key', String, nullable=False),
    Column('value', Text, nullable=False),
    PrimaryKeyConstraint('username', 'key'),
)

admin_config = Table(
    'admin_config', metadata,
    Column('id', Integer, primary_key=True),
    Column('value', Text, nullable=False),
    Column('version', Integer, nullable=False, default=0),
)


def sync_url(database_url: str) -> str:
    # sync engine for metadata.create_all (replace async driver prefix if present)
    url = database_url
    if url.startswith('postgresql+asyncpg://'):
        url = url.replace('postgresql+asyncpg://', 'postgresql://')
    if url.startswith('sqlite+aiosqlite://'):
        url = url.replace('+aiosqlite', '')
    return url


def create_tables(database_url: str) -> None:
    engine = create_engine(sync_url(database_url), echo=False)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()


class SQLStorage(Storage):
    def __init__(self, database_url: str):
        self.database_url = database_url
        self.database = Database(database_url)

    async def connect(self):
        create_tables(self.database_url)
        await self.database.connect()

    async def disconnect(self):
        if self.database.is_connected:
            await self.database.disconnect()

    # users
    async def register_user(self, username, password):
        await self.database.execute(users.insert().values(
            username=username,
            hashed_password=get_password_hash(password),
            created_at=int(time.time() * 1000),
        ))

    async def verify_user(self, username, password):
        row = await self.database.fetch_one(users.select().where(users.c.username == username))
        if not row:
            return False
        return verify_password(password, row['hashed_password'])

    async def check_user_exist(self, username):
        row = await self.database.fetch_one(users.select().where(users.c.username == username))
        return row is not None

    async def change_password(self, username, password):
        if not await self.check_user_exist(username):
            raise StorageError(f'user {username} has no credentials')
        await self.database.execute(
            users.update().where(users.c.username == username).values(hashed_password=get_password_hash(password))
        )

    async def delete_user(self, username):
        async with self.database.transaction():
            await self.database.execute(users.delete().where(users.c.username == username))
            await self.database.execute(user_settings.delete().where(user_settings.c.username == username))
            await self.database.execute(skip_configs.delete().where(skip_configs.c.username == username))

    async def get_all_users(self):
        rows = await self.database.fetch_all(users.select().order_by(users.c.created_at))
        return [UserRecord(username=row['username'], created_at=row['created_at']) for row in rows]

    # settings
    async def get_user_settings(self, username):
        row = await self.database.fetch_one(user_settings.select().where(user_settings.c.username == username))
        if not row:
            return None
        return UserSettings.model_validate_json(row['value'])

    async def set_user_settings(self, username, settings):
        async with self.database.transaction():
            await self.database.execute(user_settings.delete().where(user_settings.c.username == username))
            await self.database.execute(user_settings.insert().values(username=username, value=settings.model_dump_json()))

    # skip configs
    def _skip_where(self, username, key):
        return (skip_configs.c.username == username) & (skip_configs.c.key == key)

    async def get_skip_config(self, username, key):
        row = await self.database.fetch_one(skip_configs.select().where(self._skip_where(username, key)))
        if not row:
            return None
        return EpisodeSkipConfig.model_validate_json(row['value'])

    async def set_skip_config(self, username, key, config):
        async with self.database.transaction():
            await self.database.execute(skip_configs.delete().where(self._skip_where(username, key)))
            await self.database.execute(skip_configs.insert().values(
                username=username, key=key, value=config.model_dump_json(by_alias=True)))

    async def delete_skip_config(self, username, key):
        await self.database.execute(skip_configs.delete().where(self._skip_where(username, key)))

    async def get_all_skip_configs(self, username):
        rows = await self.database.fetch_all(skip_configs.select().where(skip_configs.c.username == username))
        return {row['key']: EpisodeSkipConfig.model_validate_json(row['value']) for row in rows}

    # admin config
    async def get_admin_config(self):
        row = await self.database.fetch_one(admin_config.select().where(admin_config.c.id == ADMIN_CONFIG_ID))
        if not row:
            return None
        data = json.loads(row['value'])
        data['version'] = row['version']
        return AdminConfig(**data)

    async def set_admin_config(self, config, expected_version):
        value = config.model_dump_json(exclude={'version'})
        async with self.database.transaction():
            row = await self.database.fetch_one(admin_config.select().where(admin_config.c.id == ADMIN_CONFIG_ID))
            if row is None:
                if expected_version != 0:
                    raise ConflictError()
                await self.database.execute(admin_config.insert().values(id=ADMIN_CONFIG_ID, value=value, version=1))
            else:
                await self.database.execute(
                    admin_config.update()
                    .where((admin_config.c.id == ADMIN_CONFIG_ID) & (admin_config.c.version == expected_version))
                    .values(value=value, version=expected_version + 1)
                )
                row = await self.database.fetch_one(admin_config.select().where(admin_config.c.id == ADMIN_CONFIG_ID))
                if row['version'] != expected_version + 1 or row['value'] != value:
                    raise ConflictError()
        return config.model_copy(update={'version': expected_version + 1})
