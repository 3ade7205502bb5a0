"""
Identity Masking Filter

Replaces author identities in archived posts with stable pseudonyms
("User 1", "User 2", ...) assigned in order of first appearance, and swaps
real avatars for a neutral placeholder. Pure: no network access, never fails.
"""

import logging
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from bs4 import NavigableString, Comment

from .models import Post
from .resources import AVATAR_PLACEHOLDER, parse_fragment, render_fragment


# Minimum trimmed length for a name to be replaced anywhere in post text
MIN_ASCII_NAME_LENGTH = 5
MIN_UNICODE_NAME_LENGTH = 2

PROFILE_LINK = re.compile(r'/u/[^/?#]+')


class IdentityMasker:
    """
    Deterministic pseudonymization over a post sequence.

    Each post's author is assigned before the names mentioned inside that
    post, so the same post sequence always yields the same mapping.
    """

    def __init__(self, template: str = "User {n}"):
        self.template = template
        self.logger = logging.getLogger(__name__)
        self._by_identity: Dict[Tuple[str, str], str] = {}
        self._by_name: Dict[str, str] = {}
        self._assigned = 0

    @property
    def mapping(self) -> Dict[str, str]:
        """Real name or username -> pseudonym, for everything seen so far."""
        return dict(self._by_name)

    def pseudonym(self, identity: Tuple[str, str]) -> str:
        if identity not in self._by_identity:
            self._assigned += 1
            self._by_identity[identity] = self.template.format(n=self._assigned)
        return self._by_identity[identity]

    def _register_author(self, post: Post) -> str:
        if post.user_id is not None:
            identity = ('id', str(post.user_id))
        else:
            identity = ('username', post.username or post.name)
        names = [n.strip() for n in (post.username, post.name) if n and n.strip()]
        if identity not in self._by_identity:
            # Mentioned before their first post: keep the alias the mention got
            for name in names:
                if name in self._by_name:
                    self._by_identity[identity] = self._by_name[name]
                    break
        alias = self.pseudonym(identity)
        for name in names:
            self._by_name.setdefault(name, alias)
        return alias

    def _register_name(self, name: str) -> Optional[str]:
        name = (name or '').strip()
        if not name:
            return None
        if name not in self._by_name:
            self._by_name[name] = self.pseudonym(('username', name))
        return self._by_name[name]

    @staticmethod
    def strip_avatars(html: str) -> str:
        """Remove avatar images embedded in content (quote headers, mentions)."""
        soup = parse_fragment(html)
        removed = 0
        for img in soup.select('img.avatar'):
            img.decompose()
            removed += 1
        if not removed:
            return html
        return render_fragment(soup)

    def mask_post(self, post: Post) -> Post:
        alias = self._register_author(post)
        soup = parse_fragment(post.content)

        # Collect mentioned names in document order before rewriting anything
        for el in soup.find_all(['a', 'span'], class_='mention'):
            self._register_name(el.get_text().lstrip('@'))
        for quote in soup.select('aside.quote'):
            self._register_name(quote.get('data-username', ''))

        self._mask_mentions(soup)
        self._mask_quotes(soup)
        self._mask_profile_links(soup)
        self._mask_text(soup)

        return replace(post,
                       name=alias,
                       username=alias,
                       user_id=None,
                       avatar=AVATAR_PLACEHOLDER,
                       content=render_fragment(soup) if post.content else post.content)

    def _mask_mentions(self, soup) -> None:
        for el in soup.find_all(['a', 'span'], class_='mention'):
            name = el.get_text().lstrip('@').strip()
            alias = self._by_name.get(name)
            if alias:
                el.string = f"@{alias}"
            if el.has_attr('href'):
                del el['href']

    def _mask_quotes(self, soup) -> None:
        for quote in soup.select('aside.quote'):
            username = quote.get('data-username', '').strip()
            alias = self._by_name.get(username)
            if alias:
                quote['data-username'] = alias
            for img in quote.select('img.avatar'):
                img.decompose()
            title = quote.select_one('.title')
            if title is None:
                continue
            for node in list(title.find_all(string=True)):
                if isinstance(node, Comment):
                    continue
                text = node.strip().rstrip(':').strip()
                if text and text in self._by_name:
                    node.replace_with(NavigableString(f" {self._by_name[text]}:"))

    def _mask_profile_links(self, soup) -> None:
        for link in soup.find_all('a', href=PROFILE_LINK):
            del link['href']

    def _replaceable_names(self) -> List[Tuple[str, str]]:
        names = [(name, alias) for name, alias in self._by_name.items() if _long_enough(name)]
        # Longest first so "alice_smith" wins over "alice"
        names.sort(key=lambda item: len(item[0]), reverse=True)
        return names

    def mask_text(self, text: str) -> str:
        """Replace every known name in plain text, e.g. a thread summary."""
        for name, alias in self._replaceable_names():
            if name in text:
                text = text.replace(name, alias)
        return text

    def _mask_text(self, soup) -> None:
        if not self._replaceable_names():
            return
        for node in list(soup.find_all(string=True)):
            if isinstance(node, Comment) or node.parent is None:
                continue
            if node.parent.name in ('script', 'style'):
                continue
            text = str(node)
            masked = self.mask_text(text)
            if masked != text:
                node.replace_with(NavigableString(masked))


def _long_enough(name: str) -> bool:
    trimmed = name.strip()
    if trimmed.isascii():
        return len(trimmed) >= MIN_ASCII_NAME_LENGTH
    return len(trimmed) >= MIN_UNICODE_NAME_LENGTH


def mask_posts(posts: Iterable[Post]) -> List[Post]:
    """Mask a whole post sequence with a fresh pseudonym table."""
    masker = IdentityMasker()
    return [masker.mask_post(post) for post in posts]
