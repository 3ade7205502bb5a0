"""
Archive Bundle Management

This module lays out the on-disk bundle for one thread, recognizes bundles
left by earlier runs so they can be updated in place, and renders the static
HTML pages used for offline viewing.

Bundle layout:
    <root>/metadata.json          thread metadata, the prior-bundle sentinel
    <root>/posts/<post_id>.json   one archived post per file
    <root>/resources/...          downloaded media and manifest.jsonl
    <root>/index.html, 2.html...  rendered pages
"""

import enum
import json
import math
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from threadvault.core.errors import WriteError
from threadvault.core.models import Post, ThreadMeta
from threadvault.core.resources import AVATAR_PLACEHOLDER, MISSING_PLACEHOLDER, RESOURCES_DIR
from threadvault.utils.validators import sanitize


METADATA_FILE = "metadata.json"
POSTS_DIR = "posts"
BUNDLE_FORMAT = 1
DEFAULT_PAGE_SIZE = 20

MISSING_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="120" height="80" viewBox="0 0 120 80">
<rect width="120" height="80" fill="#eee" stroke="#bbb"/>
<text x="60" y="45" font-family="sans-serif" font-size="12" fill="#888" text-anchor="middle">unavailable</text>
</svg>
"""

AVATAR_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="48" height="48" viewBox="0 0 48 48">
<rect width="48" height="48" rx="24" fill="#c8c8c8"/>
<circle cx="24" cy="19" r="8" fill="#f5f5f5"/>
<path d="M10 40c2-8 8-12 14-12s12 4 14 12z" fill="#f5f5f5"/>
</svg>
"""


class TargetState(enum.Enum):
    EMPTY = "empty"
    NON_BUNDLE = "non_bundle"
    PRIOR_BUNDLE = "prior_bundle"


def read_metadata(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """Parsed metadata file of a bundle root, or None when absent or unreadable."""
    meta_path = Path(path) / METADATA_FILE
    if not meta_path.is_file():
        return None
    try:
        with open(meta_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logging.getLogger(__name__).warning(f"Unreadable metadata file {meta_path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def classify_target(path: Union[str, Path], thread_id: int) -> TargetState:
    """
    Classify a target directory. Pure filesystem query, never prompts.

    Missing or empty -> EMPTY; holds a metadata file for ``thread_id`` ->
    PRIOR_BUNDLE; anything else -> NON_BUNDLE.
    """
    target = Path(path)
    if not target.exists():
        return TargetState.EMPTY
    if not target.is_dir():
        return TargetState.NON_BUNDLE
    if not any(target.iterdir()):
        return TargetState.EMPTY

    data = read_metadata(target)
    thread = data.get('thread') if data else None
    if isinstance(thread, dict):
        try:
            if int(thread.get('id')) == int(thread_id):
                return TargetState.PRIOR_BUNDLE
        except (TypeError, ValueError):
            pass
    return TargetState.NON_BUNDLE


def subdirectory_for(path: Union[str, Path], title: str, thread_id: Optional[int] = None) -> str:
    """
    Deterministic child directory named after the thread title.

    Falls back to "thread-<id>" when the title sanitizes to nothing.
    """
    name = sanitize(title)
    if not name:
        name = f"thread-{thread_id}" if thread_id is not None else "thread"
    return str(Path(path) / name)


def page_filename(page: int) -> str:
    return "index.html" if page <= 1 else f"{page}.html"


class BundleWriter:
    """
    Writes (or updates) the bundle of one thread.

    Every file goes through a temp file and os.replace, so an interrupted run
    never leaves a half-written file under its final name. Filesystem errors
    are raised as WriteError carrying the offending path; whatever was written
    before stays in place.
    """

    def __init__(self, root: Union[str, Path]):
        """
        Args:
            root: Bundle root directory
        """
        self.root = Path(root)
        self.posts_dir = self.root / POSTS_DIR
        self.resources_dir = self.root / RESOURCES_DIR
        self.logger = logging.getLogger(__name__)

    def prepare(self):
        """Create the directory structure and the placeholder images."""
        for directory in (self.root, self.posts_dir, self.resources_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WriteError(f"Cannot create directory {directory}: {e}", path=str(directory))

        for rel_path, content in ((MISSING_PLACEHOLDER, MISSING_SVG), (AVATAR_PLACEHOLDER, AVATAR_SVG)):
            target = self.root / rel_path
            if not target.exists():
                self._write_text(target, content)

        self.logger.info(f"Bundle directory ready at: {self.root.absolute()}")

    def write_metadata(self, meta: ThreadMeta, masked: bool = False) -> str:
        data = {
            'format': BUNDLE_FORMAT,
            'thread': meta.to_dict(),
            'masked': masked,
        }
        target = self.root / METADATA_FILE
        self._write_json(target, data)
        self.logger.debug(f"Wrote metadata for thread {meta.id}")
        return str(target)

    def write_post(self, post: Post) -> str:
        """Write or overwrite the file of one post."""
        target = self.posts_dir / f"{post.id}.json"
        self._write_json(target, post.to_dict())
        return str(target)

    def load_posts(self) -> List[Post]:
        """
        Every post in the bundle, including ones no longer present upstream,
        ordered by post number.
        """
        posts = []
        if not self.posts_dir.is_dir():
            return posts
        for path in self.posts_dir.glob('*.json'):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    posts.append(Post.from_dict(json.load(f)))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable post file {path.name}: {e}")
            except OSError as e:
                raise WriteError(f"Cannot read post file {path}: {e}", path=str(path))
        posts.sort(key=lambda p: (p.number, p.id))
        return posts

    def render_pages(self, meta: ThreadMeta, page_size: int = DEFAULT_PAGE_SIZE) -> List[str]:
        """
        Render index.html, 2.html, ... from the post files in the bundle.

        Returns:
            Paths of the written pages
        """
        posts = self.load_posts()
        page_size = max(1, page_size)
        total_pages = max(1, math.ceil(len(posts) / page_size))
        written = []
        for page in range(1, total_pages + 1):
            chunk = posts[(page - 1) * page_size:page * page_size]
            target = self.root / page_filename(page)
            self._write_text(target, self._build_page_html(meta, chunk, page, total_pages))
            written.append(str(target))
        self.logger.info(f"Rendered {total_pages} page(s) for {len(posts)} posts")
        return written

    def _build_page_html(self, meta: ThreadMeta, posts: List[Post], page: int, total_pages: int) -> str:
        """Build the HTML content of one page."""
        html = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; max-width: 960px; margin: 0 auto; padding: 20px; color: #222; }}
        h1 {{ margin-bottom: 5px; }}
        .description {{ color: #555; }}
        .categories span, .tags span {{ display: inline-block; margin-right: 8px; padding: 2px 6px; border-radius: 3px; font-size: 0.85em; background: #f0f0f0; }}
        .post {{ border-top: 1px solid #ddd; padding: 15px 0; display: flex; }}
        .post .avatar {{ width: 48px; height: 48px; border-radius: 24px; margin-right: 15px; flex-shrink: 0; }}
        .post .body {{ flex: 1; min-width: 0; }}
        .post .author {{ font-weight: bold; }}
        .post .meta {{ color: #888; font-size: 0.85em; }}
        .post .content img {{ max-width: 100%; height: auto; }}
        .post .footer {{ color: #666; font-size: 0.85em; margin-top: 8px; }}
        .post .footer img {{ width: 18px; height: 18px; vertical-align: middle; }}
        .system-message, .hidden-notice {{ color: #888; font-style: italic; }}
        .nav {{ margin: 20px 0; text-align: center; }}
        .nav a {{ margin: 0 10px; color: #2c5aa0; text-decoration: none; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <div class="categories">{categories}</div>
    <div class="tags">{tags}</div>
    <p class="description">{description}</p>
    {nav}
    <div class="posts">
        {post_entries}
    </div>
    {nav}
</body>
</html>"""

        categories = ''.join(
            f'<span style="border-left: 4px solid #{self._escape_html(c.color)}">{self._escape_html(c.name)}</span>'
            if c.color else f'<span>{self._escape_html(c.name)}</span>'
            for c in meta.categories)
        tags = ''.join(f'<span>#{self._escape_html(t)}</span>' for t in meta.tags)

        post_entries = ""
        for post in posts:
            avatar = ''
            if post.avatar:
                avatar = f'<img class="avatar" src="{self._escape_html(post.avatar)}" alt="">'
            author = self._escape_html(post.name or post.username)
            handle = ''
            if post.username and post.username != post.name:
                handle = f' <span class="meta">@{self._escape_html(post.username)}</span>'
            reply = ''
            if post.reply_to:
                reply = f' &middot; reply to #{self._escape_html(post.reply_to)}'

            reactions = []
            if post.likes:
                reactions.append(f'&#10084; {post.likes}')
            for emoji in post.emojis:
                image = emoji.get('image')
                label = self._escape_html(emoji.get('emoji', ''))
                if image:
                    reactions.append(f'<img src="{self._escape_html(image)}" alt=":{label}:" title=":{label}:"> '
                                     f'{emoji.get("count", 0)}')
                else:
                    reactions.append(f':{label}: {emoji.get("count", 0)}')
            footer = f'<div class="footer">{" &middot; ".join(reactions)}</div>' if reactions else ''

            post_entries += f"""
        <div class="post" id="post-{post.number}">
            {avatar}
            <div class="body">
                <div><span class="author">{author}</span>{handle}</div>
                <div class="meta">#{post.number} &middot; {self._escape_html(post.created_at)}{reply}</div>
                <div class="content">{post.content}</div>
                {footer}
            </div>
        </div>"""

        links = []
        if page > 1:
            links.append(f'<a href="{page_filename(page - 1)}">&laquo; Previous</a>')
        if total_pages > 1:
            links.append(f'<span>Page {page} of {total_pages}</span>')
        if page < total_pages:
            links.append(f'<a href="{page_filename(page + 1)}">Next &raquo;</a>')
        nav = f'<div class="nav">{"".join(links)}</div>' if links else ''

        return html.format(
            title=self._escape_html(meta.title),
            categories=categories,
            tags=tags,
            description=self._escape_html(meta.description),
            nav=nav,
            post_entries=post_entries,
        )

    def _escape_html(self, text: Any) -> str:
        """Escape HTML characters."""
        if not isinstance(text, str):
            text = str(text)
        return (text.replace('&', '&amp;')
                   .replace('<', '&lt;')
                   .replace('>', '&gt;')
                   .replace('"', '&quot;')
                   .replace("'", '&#x27;'))

    def _write_json(self, target: Path, data: Dict[str, Any]):
        # Sorted keys and no timestamps keep repeated runs byte-identical
        self._write_text(target, json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True) + "\n")

    def _write_text(self, target: Path, content: str):
        tmp_path = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.', suffix='.part', dir=str(target.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            os.replace(tmp_path, target)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    self.logger.warning(f"Failed to remove partial file {tmp_path}")
            raise WriteError(f"Cannot write {target}: {e}", path=str(target))
