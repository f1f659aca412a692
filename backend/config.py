import os
from typing import List, Optional
from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()

OWNER_USERNAME_DEFAULT = 'admin'
DATABASE_URL_DEFAULT = 'sqlite+aiosqlite:///./reelhub.db'


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Settings(BaseModel):
    owner_username: str = OWNER_USERNAME_DEFAULT
    # owner login password, also the cookie signing secret
    auth_password: Optional[str] = None
    storage_type: str = 'sql'
    database_url: str = DATABASE_URL_DEFAULT
    sources_file: str = 'config.json'
    config_ttl: float = 60.0
    search_timeout: float = 10.0
    max_search_pages: int = 5
    allow_register: bool = False
    allowed_origins: List[str] = ['*']
    log_level: str = 'INFO'


def load_settings() -> Settings:
    origins = os.getenv('ALLOWED_ORIGINS', '*')
    return Settings(
        owner_username=os.getenv('USERNAME') or OWNER_USERNAME_DEFAULT,
        auth_password=os.getenv('AUTH_PASSWORD') or None,
        storage_type=os.getenv('STORAGE_TYPE', 'sql').strip().lower(),
        database_url=os.getenv('DATABASE_URL', DATABASE_URL_DEFAULT),
        sources_file=os.getenv('SOURCES_FILE', 'config.json'),
        config_ttl=float(os.getenv('CONFIG_TTL', '60')),
        search_timeout=float(os.getenv('SEARCH_TIMEOUT', '10')),
        max_search_pages=int(os.getenv('MAX_SEARCH_PAGES', '5')),
        allow_register=_env_bool('ALLOW_REGISTER', False),
        allowed_origins=[o.strip() for o in origins.split(',') if o.strip()],
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
