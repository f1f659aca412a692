import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from admin import (
    UserActionRequest,
    append_registered_user,
    apply_settings_action,
    list_users_with_settings,
    load_admin_config,
    run_user_action,
)
from auth import (
    AUTH_COOKIE,
    AUTH_COOKIE_MAX_AGE,
    generate_auth_cookie,
    parse_auth_cookie,
    username_from_bearer,
)
from config import Settings, load_settings
from downstream import search_exact
from errors import AppError, AuthError, ForbiddenError, NotFoundError, ValidationError
from models import UserSettings
from search import group_results, resolve_filter_adult, search_all
from skip import save_skip_config
from sources import SourceRegistry
from storage import Storage, build_storage
from tvbox import FEED_HEADERS, build_tvbox_config, encode_tvbox_txt

logger = logging.getLogger('reelhub')

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
}
# fields only the owner may change through /api/admin/users
ADMIN_MANAGED_FIELDS = ('can_disable_filter', 'managed_by_admin', 'last_filter_change')


def cache_headers(seconds: int) -> Dict[str, str]:
    return {
        'Cache-Control': f'public, max-age={seconds}, s-maxage={seconds}',
        'CDN-Cache-Control': f'public, s-maxage={seconds}',
    }


class LoginIn(BaseModel):
    username: Any = None
    password: Any = None


class SettingsIn(BaseModel):
    settings: Optional[Dict[str, Any]] = None


class AdminUsersIn(BaseModel):
    action: Optional[str] = None
    username: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class SkipConfigIn(BaseModel):
    action: Optional[str] = None
    key: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    username: Optional[str] = None


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_registry(request: Request) -> SourceRegistry:
    return request.app.state.registry


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def _set_auth_cookie(response, value: str) -> None:
    expires = datetime.now(timezone.utc) + timedelta(seconds=AUTH_COOKIE_MAX_AGE)
    response.set_cookie(
        AUTH_COOKIE, value,
        max_age=AUTH_COOKIE_MAX_AGE,
        expires=expires,
        path='/',
        samesite='lax',
        httponly=False,
        secure=False,
    )


def _require_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError('authentication required')
    username = username_from_bearer(authorization)
    if not username:
        raise ValidationError('username must not be empty')
    return username


async def _user_exists(storage: Storage, settings: Settings, username: str) -> bool:
    return username == settings.owner_username or await storage.check_user_exist(username)


router = APIRouter(prefix='/api')


@router.get('/health')
async def health():
    return {'status': 'ok'}


# ---------- search ----------

@router.get('/search')
async def search(q: Optional[str] = None, user: Optional[str] = None, include_adult: Optional[str] = None,
                 aggregate: bool = False, authorization: Optional[str] = Header(None),
                 settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage),
                 registry: SourceRegistry = Depends(get_registry), client: httpx.AsyncClient = Depends(get_http)):
    cache_time = registry.cache_time()
    username = user or username_from_bearer(authorization)
    payload: Dict[str, Any] = {'regular_results': [], 'adult_results': []}
    if not q:
        return JSONResponse(payload, headers=cache_headers(cache_time))

    filter_adult = await resolve_filter_adult(storage, username, include_adult == 'true')
    sites = registry.available(filter_adult=filter_adult)
    results = await search_all(client, sites, q, settings.search_timeout, settings.max_search_pages)
    # adult sources are dropped before the fan-out, so the adult bucket stays empty
    payload['regular_results'] = [r.model_dump() for r in results]
    if aggregate:
        payload['groups'] = [
            {'key': key, 'results': [r.model_dump() for r in items]}
            for key, items in group_results(results, q)
        ]
    return JSONResponse(payload, headers=cache_headers(cache_time))


@router.get('/search/resources')
async def search_resources(registry: SourceRegistry = Depends(get_registry)):
    sources = registry.available(filter_adult=False)
    return JSONResponse([s.model_dump() for s in sources], headers=cache_headers(registry.cache_time()))


@router.get('/search/one')
async def search_one(q: Optional[str] = None, resourceId: Optional[str] = None,
                     settings: Settings = Depends(get_settings), registry: SourceRegistry = Depends(get_registry),
                     client: httpx.AsyncClient = Depends(get_http)):
    if not q or not resourceId:
        return JSONResponse({'error': 'missing required parameter: q or resourceId', 'result': None}, status_code=400)
    source = registry.get(resourceId)
    if source is None:
        return JSONResponse({'error': f'unknown source: {resourceId}', 'result': None}, status_code=404)
    results = await search_exact(client, source, q, settings.search_timeout, settings.max_search_pages)
    if not results:
        return JSONResponse({'error': 'no results', 'result': None}, status_code=404)
    return JSONResponse({'results': [r.model_dump() for r in results]}, headers=cache_headers(registry.cache_time()))


@router.get('/tvbox')
async def tvbox(request: Request, fmt: str = Query('json', alias='format'), registry: SourceRegistry = Depends(get_registry)):
    sources = registry.available(filter_adult=False)
    if not sources:
        return JSONResponse({'error': 'no video sources configured'}, status_code=500)
    host = request.headers.get('host') or 'localhost:8000'
    protocol = request.headers.get('x-forwarded-proto') or 'http'
    config = build_tvbox_config(sources, f'{protocol}://{host}')
    if fmt == 'txt':
        return PlainTextResponse(encode_tvbox_txt(config), headers=FEED_HEADERS)
    return JSONResponse(config, headers=FEED_HEADERS)


# ---------- login / register ----------

@router.post('/login')
async def login(body: LoginIn, settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage)):
    username, password = body.username, body.password
    if not username or not isinstance(username, str):
        raise ValidationError('username must not be empty')
    if not password or not isinstance(password, str):
        raise ValidationError('password must not be empty')

    if username == settings.owner_username:
        if not settings.auth_password or password != settings.auth_password:
            raise AuthError('wrong username or password')
        role = 'owner'
    else:
        config = await load_admin_config(storage, settings.allow_register)
        entry = config.find_user(username)
        if entry and entry.banned:
            raise AuthError('user is banned')
        if not await storage.verify_user(username, password):
            raise AuthError('wrong username or password')
        role = entry.role if entry else 'user'

    response = JSONResponse({'ok': True})
    _set_auth_cookie(response, generate_auth_cookie(username, role, settings.auth_password))
    return response


@router.post('/register')
async def register(body: LoginIn, settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage)):
    config = await load_admin_config(storage, settings.allow_register)
    if not config.allow_register:
        raise ValidationError('registration is closed')
    username, password = body.username, body.password
    if not username or not isinstance(username, str):
        raise ValidationError('username must not be empty')
    if not password or not isinstance(password, str):
        raise ValidationError('password must not be empty')
    if username == settings.owner_username or await storage.check_user_exist(username):
        raise ValidationError('user already exists')

    await storage.register_user(username, password)
    await append_registered_user(storage, username, settings.allow_register)

    response = JSONResponse({'ok': True})
    _set_auth_cookie(response, generate_auth_cookie(username, 'user', settings.auth_password))
    return response


# ---------- user settings ----------

def _check_filter_change(current: Optional[UserSettings], updated: UserSettings) -> None:
    # checked after validation so "false", 0 and "0" are caught too
    if current is not None and not current.can_disable_filter and not updated.filter_adult_content:
        raise ForbiddenError('the adult content filter is managed by an administrator')


def _build_settings(data: Dict[str, Any]) -> UserSettings:
    try:
        return UserSettings(**data)
    except PydanticValidationError:
        raise ValidationError('invalid settings')


@router.get('/user/settings')
async def get_user_settings(authorization: Optional[str] = Header(None), storage: Storage = Depends(get_storage)):
    username = _require_bearer(authorization)
    stored = await storage.get_user_settings(username)
    return JSONResponse({'settings': (stored or UserSettings()).model_dump()}, headers=NO_CACHE_HEADERS)


@router.patch('/user/settings')
async def patch_user_settings(body: SettingsIn, authorization: Optional[str] = Header(None),
                              settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage)):
    username = _require_bearer(authorization)
    if not body.settings:
        raise ValidationError('settings must not be empty')
    if not await _user_exists(storage, settings, username):
        raise NotFoundError('user does not exist')

    changes = {k: v for k, v in body.settings.items() if k not in ADMIN_MANAGED_FIELDS}
    current = await storage.get_user_settings(username)
    merged = _build_settings({**(current or UserSettings()).model_dump(), **changes})
    _check_filter_change(current, merged)
    await storage.set_user_settings(username, merged)
    return JSONResponse({'success': True, 'message': 'settings updated'}, headers=NO_CACHE_HEADERS)


@router.put('/user/settings')
async def put_user_settings(body: SettingsIn, authorization: Optional[str] = Header(None),
                            settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage)):
    username = _require_bearer(authorization)
    if not body.settings:
        raise ValidationError('settings must not be empty')
    if not await _user_exists(storage, settings, username):
        raise NotFoundError('user does not exist')

    current = await storage.get_user_settings(username)
    managed = (current or UserSettings()).model_dump(include=set(ADMIN_MANAGED_FIELDS))
    replacement = _build_settings({**body.settings, **managed})
    _check_filter_change(current, replacement)
    await storage.set_user_settings(username, replacement)
    return JSONResponse({'success': True, 'message': 'settings reset'})


# ---------- admin ----------

@router.post('/admin/user')
async def admin_user(request: Request, body: UserActionRequest, settings: Settings = Depends(get_settings),
                     storage: Storage = Depends(get_storage)):
    info = parse_auth_cookie(request.cookies.get(AUTH_COOKIE), settings.auth_password)
    if info is None or not info.username:
        raise AuthError('unauthorized')
    await run_user_action(storage, info.username, settings.owner_username, body, settings.allow_register)
    return JSONResponse({'ok': True}, headers={'Cache-Control': 'no-store'})


def _require_owner(authorization: Optional[str], settings: Settings) -> str:
    if not authorization:
        raise AuthError('authentication required')
    username = username_from_bearer(authorization)
    if username != settings.owner_username:
        raise ForbiddenError('insufficient permissions')
    return username


@router.get('/admin/users')
async def admin_list_users(authorization: Optional[str] = Header(None), settings: Settings = Depends(get_settings),
                           storage: Storage = Depends(get_storage)):
    _require_owner(authorization, settings)
    config = await load_admin_config(storage, settings.allow_register)
    users = await list_users_with_settings(storage, config)
    return {'users': users, 'total': len(users)}


@router.post('/admin/users')
async def admin_update_users(body: AdminUsersIn, authorization: Optional[str] = Header(None),
                             settings: Settings = Depends(get_settings), storage: Storage = Depends(get_storage)):
    _require_owner(authorization, settings)
    if body.username and not await _user_exists(storage, settings, body.username):
        raise NotFoundError('user does not exist')
    message = await apply_settings_action(storage, body.action, body.username, body.settings)
    return {'success': True, 'message': message}


# ---------- skip configs ----------

@router.post('/skip-configs')
async def skip_configs(request: Request, body: SkipConfigIn, settings: Settings = Depends(get_settings),
                       storage: Storage = Depends(get_storage)):
    if not body.action:
        raise ValidationError('missing action')
    info = parse_auth_cookie(request.cookies.get(AUTH_COOKIE), settings.auth_password)
    username = body.username or (info.username if info else None)
    if not username:
        raise AuthError('not logged in')

    if body.action == 'get':
        if not body.key:
            raise ValidationError('missing config key')
        config = await storage.get_skip_config(username, body.key)
        return {'config': config.model_dump(by_alias=True) if config else None}

    if body.action == 'set':
        if body.config is None:
            raise ValidationError('missing config data')
        key = await save_skip_config(storage, username, body.key, body.config)
        return {'success': True, 'key': key}

    if body.action == 'getAll':
        configs = await storage.get_all_skip_configs(username)
        return {'configs': {key: cfg.model_dump(by_alias=True) for key, cfg in configs.items()}}

    if body.action == 'delete':
        if not body.key:
            raise ValidationError('missing config key')
        await storage.delete_skip_config(username, body.key)
        return {'success': True}

    raise ValidationError('unsupported action')


# ---------- error handlers ----------

async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
        message = exc.default_message
    else:
        message = exc.message
    return JSONResponse({'error': message}, status_code=exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({'error': 'invalid request parameters'}, status_code=400)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception('%s %s failed', request.method, request.url.path)
    return JSONResponse({'error': 'internal server error'}, status_code=500)


def create_app(settings: Optional[Settings] = None, storage: Optional[Storage] = None,
               registry: Optional[SourceRegistry] = None,
               http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s %(levelname)s:%(name)s:%(message)s')

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.storage.connect()
        yield
        await app.state.storage.disconnect()
        await app.state.http.aclose()

    app = FastAPI(title='Reelhub Backend', lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage or build_storage(settings)
    app.state.registry = registry or SourceRegistry.from_file(settings.sources_file, settings.config_ttl)
    app.state.http = http_client or httpx.AsyncClient(timeout=settings.search_timeout, follow_redirects=True)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()
