"""
Thread Metadata Resolver

Resolves a thread identifier into ThreadMeta: title, summary, category
breadcrumb, tags and the canonical ordered list of post ids.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup

from .client import ForumClient
from .errors import NotFoundError, ProtocolError
from .models import Category, ThreadMeta
from threadvault.utils.validators import parse_thread_id


MAX_CATEGORY_DEPTH = 16


def summarize(html: str) -> str:
    """Plain text of an HTML fragment with whitespace collapsed."""
    if not html:
        return ""
    text = BeautifulSoup(html, 'lxml').get_text(' ')
    return re.sub(r'\s+', ' ', text).strip()


class MetadataResolver:
    """
    Fetches thread metadata from the forum's JSON API.

    One call per run. Repeating it for the same thread returns the same
    post id ordering, barring edits made on the server in between.
    """

    def __init__(self, client: ForumClient):
        self.client = client
        self.logger = logging.getLogger(__name__)

    def resolve(self, thread_id: int) -> ThreadMeta:
        """
        Resolve a thread.

        Raises:
            ValueError: thread_id is not a positive integer
            AuthError: The token was rejected
            NotFoundError: No such thread
            ProtocolError: The response is missing required fields
        """
        ok, thread_id, err = parse_thread_id(thread_id)
        if not ok:
            raise ValueError(err)

        self.logger.info(f"Resolving metadata for thread {thread_id}")
        data = self._get(f"/t/{thread_id}.json", what=f"thread {thread_id}")

        title = data.get('title')
        post_stream = data.get('post_stream')
        if not isinstance(title, str) or not isinstance(post_stream, dict):
            raise self._malformed(f"thread {thread_id} response lacks title or post_stream", data)

        stream = post_stream.get('stream')
        if not isinstance(stream, list):
            raise self._malformed(f"thread {thread_id} response lacks post_stream.stream", data)
        try:
            post_ids = tuple(int(i) for i in stream)
        except (TypeError, ValueError):
            raise self._malformed(f"thread {thread_id} has non-numeric post ids", data)

        posts = post_stream.get('posts') or []
        description = summarize(posts[0].get('cooked', '')) if posts and isinstance(posts[0], dict) else ""

        tags = []
        for tag in data.get('tags') or []:
            # Newer Discourse versions send tags as objects
            name = tag.get('name') if isinstance(tag, dict) else tag
            if isinstance(name, str) and name not in tags:
                tags.append(name)

        categories = self._categories(data.get('category_id'))

        meta = ThreadMeta(
            id=thread_id,
            title=title,
            description=description,
            categories=tuple(categories),
            tags=tuple(tags),
            post_ids=post_ids,
        )
        self.logger.info(f"Thread {thread_id} '{title}': {len(post_ids)} posts, "
                         f"{len(categories)} categories, {len(tags)} tags")
        return meta

    def _categories(self, leaf_id: Optional[int]) -> List[Category]:
        """Category breadcrumb, root first."""
        chain: List[Category] = []
        seen = set()
        current = leaf_id
        while current is not None and current not in seen and len(chain) < MAX_CATEGORY_DEPTH:
            seen.add(current)
            data = self._get(f"/c/{current}/show.json", what=f"category {current}")
            category = data.get('category')
            if not isinstance(category, dict) or not isinstance(category.get('name'), str):
                raise self._malformed(f"category {current} response lacks a name", data)
            chain.append(Category(name=category['name'], color=category.get('color') or ''))
            current = category.get('parent_category_id')
        chain.reverse()
        return chain

    def _get(self, path: str, what: str) -> Dict[str, Any]:
        try:
            return self.client.get_json(path)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                raise NotFoundError(f"{what.capitalize()} not found")
            raise ProtocolError(f"Unexpected HTTP {status} while fetching {what}")
        except requests.RequestException as e:
            raise ProtocolError(f"Request for {what} failed: {e}")

    def _malformed(self, message: str, data: Dict[str, Any]) -> ProtocolError:
        raw = repr(data)[:2000]
        self.logger.error(f"Malformed response: {message}; payload: {raw}")
        return ProtocolError(f"Malformed response: {message}", raw_payload=raw)
