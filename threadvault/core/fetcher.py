"""
Paginated Content Fetcher

Streams the posts of a thread in fixed-size chunks that follow the canonical
post id order, and turns raw post records into archived Post objects.
"""

import logging
import math
import re
from typing import Any, Dict, Iterator, List, Optional

import requests

from .client import ForumClient
from .errors import AuthError, FetchError, ProtocolError
from .models import Post, PostChunk, ThreadMeta
from .progress import ProgressReporter


DEFAULT_CHUNK_SIZE = 400
LIKE_ACTION_ID = 2

# Discourse small-action codes rendered as system messages
ACTION_CODE_MESSAGES = {
    'closed.enabled': 'closed this topic',
    'closed.disabled': 'opened this topic',
    'autoclosed.enabled': 'closed this topic automatically',
    'autoclosed.disabled': 'opened this topic automatically',
    'archived.enabled': 'archived this topic',
    'archived.disabled': 'unarchived this topic',
    'pinned.enabled': 'pinned this topic',
    'pinned.disabled': 'unpinned this topic',
    'pinned_globally.enabled': 'pinned this topic globally',
    'pinned_globally.disabled': 'unpinned this topic globally',
    'banner.enabled': 'made this topic a banner',
    'banner.disabled': 'removed this banner',
    'visible.enabled': 'listed this topic',
    'visible.disabled': 'unlisted this topic',
    'split_topic': 'split this topic',
    'invited_user': 'invited a user',
    'invited_group': 'invited a group',
    'user_left': 'left the conversation',
    'removed_user': 'removed a user',
    'removed_group': 'removed a group',
    'public_topic': 'made this topic public',
    'private_topic': 'made this topic a personal message',
    'category_changed': 'changed the category',
    'tags_changed': 'changed the tags',
}


def chunk_count(total: int, chunk_size: int) -> int:
    return math.ceil(total / chunk_size) if total else 0


class ChunkFetcher:
    """
    Lazy, forward-only pagination over a thread's posts.

    The generator cannot be resumed after an error; a new run starts again
    from the first chunk.
    """

    def __init__(self, client: ForumClient, reporter: ProgressReporter, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.client = client
        self.reporter = reporter
        self.chunk_size = chunk_size
        self.logger = logging.getLogger(__name__)

    def iter_chunks(self, meta: ThreadMeta) -> Iterator[PostChunk]:
        """
        Yield PostChunk objects in post id order.

        Reports chunks-total once, with the first successful response and
        before any chunk-downloaded.

        Raises:
            FetchError: A chunk failed for a reason other than throttling
            ProtocolError: A chunk response could not be interpreted
        """
        post_ids = list(meta.post_ids)
        total = chunk_count(len(post_ids), self.chunk_size)
        if total == 0:
            self.reporter.chunks_total(0)
            return

        last_success: Optional[int] = None
        for index in range(total):
            ids = post_ids[index * self.chunk_size:(index + 1) * self.chunk_size]
            records = self._fetch(meta.id, index, ids, last_success)

            if last_success is None:
                self.reporter.chunks_total(total)
            last_success = index
            self.reporter.chunk_downloaded()
            self.logger.info(f"Fetched chunk {index + 1}/{total} ({len(records)} posts)")

            yield PostChunk(index=index, post_ids=tuple(ids), posts=records)

    def _fetch(self, thread_id: int, index: int, ids: List[int],
               last_success: Optional[int]) -> List[Dict[str, Any]]:
        params = [('post_ids[]', str(i)) for i in ids]
        try:
            data = self.client.get_json(f"/t/{thread_id}/posts.json", params=params)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 'unknown'
            self.logger.error(f"HTTP {status} fetching chunk {index}")
            raise FetchError(f"HTTP {status} while fetching post chunk {index}",
                             chunk_index=index, last_success_index=last_success)
        except requests.RequestException as e:
            self.logger.error(f"Request error fetching chunk {index}: {e}")
            raise FetchError(f"Request failed while fetching post chunk {index}: {e}",
                             chunk_index=index, last_success_index=last_success)

        post_stream = data.get('post_stream')
        posts = post_stream.get('posts') if isinstance(post_stream, dict) else None
        if not isinstance(posts, list):
            raw = repr(data)[:2000]
            self.logger.error(f"Chunk {index} response lacks post_stream.posts; payload: {raw}")
            raise ProtocolError(f"Malformed response for post chunk {index}", raw_payload=raw)

        by_id = {}
        for record in posts:
            if isinstance(record, dict) and 'id' in record:
                by_id[record['id']] = record

        ordered = []
        for post_id in ids:
            record = by_id.get(post_id)
            if record is None:
                self.logger.debug(f"Post {post_id} not returned by server (deleted or hidden)")
                continue
            ordered.append(record)
        return ordered


def normalize_emoji(name: str) -> str:
    """'thumbsup:t3' -> 'thumbsup/3', the path of a toned emoji image."""
    return re.sub(r'(.+):t([1-6])$', r'\1/\2', name.strip(':'))


class PostBuilder:
    """Turns raw post records into archived Post objects."""

    def __init__(self, client: ForumClient, emoji_set: str = 'twitter',
                 custom_emojis: Optional[Dict[str, str]] = None):
        self.client = client
        self.emoji_set = emoji_set
        self.custom_emojis = custom_emojis or {}
        self.logger = logging.getLogger(__name__)

    def load_custom_emojis(self) -> Dict[str, str]:
        """
        Fetch the forum's custom emoji list. Failure only costs the custom
        reaction images, so it is logged rather than raised.
        """
        try:
            data = self.client.get_json('/emojis.json')
        except (requests.RequestException, ProtocolError) as e:
            self.logger.warning(f"Custom emoji list unavailable: {e}")
            return self.custom_emojis

        emojis = {}
        for group in data.values():
            if not isinstance(group, list):
                continue
            for emoji in group:
                if isinstance(emoji, dict) and emoji.get('name') and emoji.get('url'):
                    emojis[emoji['name']] = emoji['url']
        self.custom_emojis = emojis
        self.logger.info(f"Loaded {len(emojis)} custom emojis")
        return emojis

    def emoji_url(self, name: str) -> str:
        custom = self.custom_emojis.get(name.strip(':'))
        if custom:
            return custom
        return f"/images/emoji/{self.emoji_set}/{normalize_emoji(name)}.png"

    def build(self, raw: Dict[str, Any]) -> Post:
        content = self._content(raw)
        return Post(
            id=int(raw['id']),
            number=int(raw.get('post_number') or 0),
            user_id=raw.get('user_id'),
            name=raw.get('name') or '',
            username=raw.get('username') or '',
            created_at=raw.get('created_at') or '',
            content=content,
            likes=self.likes(raw),
            reply_to=raw.get('reply_to_post_number'),
            emojis=[{'emoji': r.get('emoji', ''), 'count': len(r.get('usernames') or [])}
                    for r in raw.get('retorts') or [] if isinstance(r, dict)],
        )

    def likes(self, raw: Dict[str, Any]) -> int:
        for action in raw.get('actions_summary') or []:
            if action.get('id') == LIKE_ACTION_ID and action.get('count'):
                return int(action['count'])
        return 0

    def _content(self, raw: Dict[str, Any]) -> str:
        action_code = raw.get('action_code')
        if action_code in ACTION_CODE_MESSAGES:
            return f"<p class=\"system-message\">System message: {ACTION_CODE_MESSAGES[action_code]}</p>"

        cooked = raw.get('cooked') or ''
        if raw.get('cooked_hidden'):
            try:
                data = self.client.get_json(f"/posts/{raw['id']}/cooked.json")
                cooked = data.get('cooked') or cooked
            except (requests.RequestException, AuthError, ProtocolError) as e:
                # Content this token may not see stays hidden
                self.logger.warning(f"Could not reveal hidden post {raw['id']}: {e}")
            return f"<p class=\"hidden-notice\">Hidden content</p>{cooked}"
        return cooked
