"""
Resource discovery and rewrite utilities.

This module finds embedded media in post HTML (images, videos, attachments,
emoji and avatars), maps each reference to a canonical source URL and a stable
bundle-relative path, and rewrites the HTML to point at the local copies once
they are downloaded.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from .models import ResourceRef
from threadvault.utils.validators import normalize_resource_url, resource_filename, url_extension


RESOURCES_DIR = "resources"
MISSING_PLACEHOLDER = f"{RESOURCES_DIR}/_missing.svg"
AVATAR_PLACEHOLDER = f"{RESOURCES_DIR}/_avatar.svg"

IMAGE_EXTS = {'jpg', 'jpeg', 'gif', 'png', 'webp', 'svg'}
VIDEO_EXTS = {'mp4', 'mov', 'avi', 'webm'}
MEDIA_EXTS = IMAGE_EXTS | VIDEO_EXTS


def parse_fragment(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or '', 'lxml')


def render_fragment(soup: BeautifulSoup) -> str:
    """Serialize a parsed fragment without the html/body wrapper lxml adds."""
    if soup.body is not None:
        return ''.join(str(child) for child in soup.body.contents)
    return str(soup)


def local_path_for(url: str) -> str:
    return f"{RESOURCES_DIR}/{resource_filename(url)}"


def is_media(url: str) -> bool:
    return url_extension(url) in MEDIA_EXTS


class ResourceCollector:
    def __init__(self, base_url: str):
        self.base_url = base_url
        self.logger = logging.getLogger(__name__)

    def normalize(self, raw: Optional[str]) -> Optional[str]:
        return normalize_resource_url(raw, self.base_url) if raw else None

    def ref(self, url: str, kind: str) -> ResourceRef:
        return ResourceRef(source_url=url, local_path=local_path_for(url), kind=kind)

    def collect(self, html: str) -> List[ResourceRef]:
        soup = parse_fragment(html)
        found: Dict[str, ResourceRef] = {}

        def add(raw: Optional[str], kind: str, require_media: bool = True):
            url = self.normalize(raw)
            if not url:
                return
            if require_media and not is_media(url):
                return
            if kind == 'image' and url_extension(url) in VIDEO_EXTS:
                kind = 'video'
            if url not in found:
                found[url] = self.ref(url, kind)

        # Images (emoji and quote avatars keep their own kind)
        for img in soup.find_all('img'):
            classes = img.get('class') or []
            kind = 'emoji' if 'emoji' in classes else 'avatar' if 'avatar' in classes else 'image'
            add(img.get('src'), kind)
            for candidate in self._parse_srcset(img.get('srcset')):
                add(candidate, kind)

        # Picture/video sources
        for source in soup.find_all('source'):
            add(source.get('src'), 'image')
            for candidate in self._parse_srcset(source.get('srcset')):
                add(candidate, 'image')

        for video in soup.find_all('video'):
            add(video.get('src'), 'video')
            add(video.get('poster'), 'image')

        # Links: uploaded attachments regardless of type, other links only to media
        for link in soup.find_all('a'):
            href = link.get('href')
            if 'attachment' in (link.get('class') or []):
                add(href, 'attachment', require_media=False)
            else:
                add(href, 'image')

        return list(found.values())

    def _parse_srcset(self, srcset: Optional[str]) -> List[str]:
        # srcset entries are comma-separated; each entry has URL + descriptor
        candidates = []
        if not srcset:
            return candidates
        for part in srcset.split(','):
            item = part.strip()
            if not item:
                continue
            candidates.append(item.split()[0])
        return candidates


class ResourceRewriter:
    def __init__(self, collector: ResourceCollector):
        self.collector = collector
        self.logger = logging.getLogger(__name__)

    def rewrite(self, html: str, mapping: Dict[str, str]) -> str:
        """
        Point every collected reference at its local path.

        mapping: canonical source URL -> bundle-relative path (the local copy
        or the missing-resource placeholder)
        """
        soup = parse_fragment(html)
        normalize = self.collector.normalize

        def local(raw: Optional[str]) -> Optional[str]:
            url = normalize(raw)
            return mapping.get(url) if url else None

        for tag, attr in (('img', 'src'), ('source', 'src'), ('video', 'src'),
                          ('video', 'poster'), ('a', 'href')):
            for el in soup.find_all(tag):
                target = local(el.get(attr))
                if target:
                    el[attr] = target

        for el in soup.find_all(['img', 'source']):
            srcset = el.get('srcset')
            if not srcset:
                continue
            parts = []
            for part in srcset.split(','):
                item = part.strip()
                if not item:
                    continue
                tokens = item.split()
                target = local(tokens[0])
                if target:
                    parts.append(' '.join([target] + tokens[1:]))
                else:
                    parts.append(item)
            el['srcset'] = ', '.join(parts)

        return render_fragment(soup)
