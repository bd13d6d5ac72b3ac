"""
Loads a book's spine (linear reading order) into chapters the reader can render.
"""

import logging
import zipfile
from dataclasses import dataclass
from typing import List, Dict, Optional, Any

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)


class SpineLoadError(Exception):
    """The file is not a readable EPUB."""


@dataclass
class Chapter:
    """One spine item, ready to be paginated."""
    label: str        # Chapter label shown to the user and stored with the position
    html: str         # Cleaned body HTML
    href: str = ""    # File name inside the container (e.g., 'part01.html')


# --- Utilities ---

def clean_html_content(soup: BeautifulSoup) -> BeautifulSoup:

    # Remove dangerous/useless tags
    for tag in soup(['script', 'style', 'iframe', 'video', 'nav', 'form', 'button', 'input']):
        tag.decompose()

    # Remove HTML comments
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    return soup


def guess_label(soup: BeautifulSoup, fallback: str) -> str:
    """Use the first heading as the chapter label."""
    heading = soup.find(['h1', 'h2', 'h3'])
    if heading:
        text = ' '.join(heading.get_text().split())
        if text:
            return text
    return fallback


def body_html(soup: BeautifulSoup) -> str:
    body = soup.find('body')
    if body:
        return "".join(str(x) for x in body.contents)
    return str(soup)


def flatten_toc_titles(toc_list) -> Dict[str, str]:
    """
    Map each file in the TOC to the first title that points into it.
    ebooklib TOC items are either `Link` objects, `Section` objects or
    tuples (Section, [Children]).
    """
    titles: Dict[str, str] = {}

    def visit(items):
        for item in items:
            if isinstance(item, tuple):
                section, children = item
                _remember(section)
                visit(children)
            elif isinstance(item, (epub.Link, epub.Section)):
                _remember(item)

    def _remember(entry):
        href = getattr(entry, 'href', None) or ''
        title = getattr(entry, 'title', None) or ''
        file_href = href.split('#')[0]
        if file_href and title and file_href not in titles:
            titles[file_href] = title

    visit(toc_list)
    return titles


def chapters_from_html(items: List[Dict[str, Any]]) -> List[Chapter]:
    """
    Build chapters from already rendered HTML, as sent by a client:
    [{"label": "...", "html": "..."}, ...]. Missing labels are guessed.
    """
    chapters = []
    for i, item in enumerate(items):
        html = item.get('html') or ''
        soup = clean_html_content(BeautifulSoup(html, 'html.parser'))
        label = item.get('label') or guess_label(soup, f"Section {i + 1}")
        chapters.append(Chapter(label=label, html=body_html(soup), href=item.get('href', '')))
    return chapters


def load_epub_spine(epub_path: str) -> List[Chapter]:
    """Read an EPUB and return its document spine items in reading order."""
    logger.info("Loading %s", epub_path)
    try:
        book = epub.read_epub(epub_path)
    except (epub.EpubException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise SpineLoadError(f"Cannot read {epub_path}: {e}") from e
    toc_titles = flatten_toc_titles(book.toc)

    chapters = []
    for i, spine_item in enumerate(book.spine):
        item_id, _linear = spine_item
        item = book.get_item_with_id(item_id)

        if not item or item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue

        raw_content = item.get_content().decode('utf-8', errors='ignore')
        soup = clean_html_content(BeautifulSoup(raw_content, 'html.parser'))

        label: Optional[str] = toc_titles.get(item.get_name())
        if not label:
            label = guess_label(soup, f"Section {i + 1}")

        chapters.append(Chapter(label=label, html=body_html(soup), href=item.get_name()))

    logger.info("Loaded %d spine items from %s", len(chapters), epub_path)
    return chapters
