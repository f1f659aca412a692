"""models.py - pydantic models for sources, search results, settings, accounts and skip configs.

Search results are built per request and never stored. Everything else is
persisted as JSON through the storage layer (see storage.py / database.py).
"""
import time
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal['owner', 'admin', 'user']
SegmentType = Literal['opening', 'ending']


class Source(BaseModel):
    key: str
    name: str
    api: str
    detail: Optional[str] = None
    category: Optional[str] = None
    is_adult: bool = False
    disabled: bool = False


class SearchResult(BaseModel):
    id: str
    title: str
    poster: str = ''
    episodes: List[str] = []
    episodes_titles: List[str] = []
    source: str
    source_name: str
    year: str = 'unknown'
    desc: str = ''
    type_name: str = ''
    douban_id: Optional[int] = None


class UserSettings(BaseModel):
    filter_adult_content: bool = True
    theme: Literal['light', 'dark', 'auto'] = 'auto'
    language: str = 'zh-CN'
    auto_play: bool = True
    video_quality: str = 'auto'
    can_disable_filter: bool = True
    managed_by_admin: bool = False
    last_filter_change: Optional[str] = None


class UserRecord(BaseModel):
    username: str
    created_at: Optional[int] = None


class UserAccount(BaseModel):
    username: str
    role: Role = 'user'
    banned: bool = False


class AdminConfig(BaseModel):
    allow_register: bool = False
    users: List[UserAccount] = []
    version: int = 0

    def find_user(self, username: str) -> Optional[UserAccount]:
        for user in self.users:
            if user.username == username:
                return user
        return None


class SkipSegment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: float
    end: float
    type: SegmentType
    title: Optional[str] = None
    auto_skip: bool = Field(True, alias='autoSkip')
    auto_next_episode: bool = Field(True, alias='autoNextEpisode')

    @model_validator(mode='after')
    def _check_range(self):
        if self.start >= self.end:
            raise ValueError('segment start must be before end')
        return self


class EpisodeSkipConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    source: str = Field(min_length=1)
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    segments: List[SkipSegment]
    updated_time: int = Field(default_factory=lambda: int(time.time() * 1000), alias='updatedTime')
