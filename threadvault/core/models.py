"""
Data records shared by the archive pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Category:
    name: str
    color: str = ""


@dataclass(frozen=True)
class ThreadMeta:
    """Thread-level metadata, resolved once at the start of a run."""

    id: int
    title: str
    description: str
    categories: Tuple[Category, ...] = ()
    tags: Tuple[str, ...] = ()
    post_ids: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'categories': [asdict(c) for c in self.categories],
            'tags': list(self.tags),
            'post_ids': list(self.post_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadMeta":
        return cls(
            id=int(data['id']),
            title=data.get('title', ''),
            description=data.get('description', ''),
            categories=tuple(Category(c.get('name', ''), c.get('color', ''))
                             for c in data.get('categories', [])),
            tags=tuple(data.get('tags', [])),
            post_ids=tuple(int(i) for i in data.get('post_ids', [])),
        )


@dataclass
class PostChunk:
    """A batch of raw post records for a contiguous slice of ``post_ids``."""

    index: int
    post_ids: Tuple[int, ...]
    posts: List[Dict[str, Any]]


@dataclass
class Post:
    id: int
    number: int
    user_id: Optional[int]
    name: str
    username: str
    created_at: str
    content: str
    likes: int = 0
    reply_to: Optional[int] = None
    emojis: List[Dict[str, Any]] = field(default_factory=list)
    avatar: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Post":
        return cls(
            id=int(data['id']),
            number=int(data.get('number', 0)),
            user_id=data.get('user_id'),
            name=data.get('name', ''),
            username=data.get('username', ''),
            created_at=data.get('created_at', ''),
            content=data.get('content', ''),
            likes=int(data.get('likes', 0)),
            reply_to=data.get('reply_to'),
            emojis=list(data.get('emojis', [])),
            avatar=data.get('avatar'),
        )


@dataclass(frozen=True)
class ResourceRef:
    source_url: str       # Normalized absolute URL, the resource identity
    local_path: str       # Bundle-relative path, e.g. 'resources/3f2a..._logo.png'
    kind: str             # 'image' | 'video' | 'attachment' | 'avatar' | 'emoji'


@dataclass
class ResourceResult:
    ref: ResourceRef
    local_path: str
    ok: bool
    error: Optional[str] = None
    reused: bool = False
