from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from models import EpisodeSkipConfig


def skip_key(source: str, video_id: str) -> str:
    return f'{source}+{video_id}'


def parse_skip_config(payload: Any) -> EpisodeSkipConfig:
    if not isinstance(payload, dict):
        raise ValidationError('skip config must be an object')
    if not isinstance(payload.get('segments'), list):
        raise ValidationError('skip config segments must be a list')
    try:
        return EpisodeSkipConfig.model_validate(payload)
    except PydanticValidationError as exc:
        locs = ['.'.join(str(part) for part in err.get('loc', ())) for err in exc.errors()]
        if any(loc.startswith('segments') for loc in locs):
            raise ValidationError('invalid skip segment')
        raise ValidationError('invalid skip config')


async def save_skip_config(storage, username: str, key: Optional[str], payload: Dict[str, Any]) -> str:
    """Validate and store a config; an empty segment list removes the stored one.

    Without an explicit key the config is stored under `source+id`. Returns the key used.
    """
    config = parse_skip_config(payload)
    key = key or skip_key(config.source, config.id)
    if not config.segments:
        await storage.delete_skip_config(username, key)
    else:
        await storage.set_skip_config(username, key, config)
    return key
