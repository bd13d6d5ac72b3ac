"""
Reading positions and how a book is resumed from them.

A position is either structured ("chapter N, page P of that chapter") or an
opaque location string written by older clients. Style always goes on before
a position is restored: font size and theme reflow pagination, so a page
number only means something under the style it was recorded with.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)

MIN_FONT_SIZE = 50
MAX_FONT_SIZE = 200
DEFAULT_FONT_SIZE = 100

_SPINE_POSITION = re.compile(r'^spine:(\d+)(?::page:(\d+))?$')


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


class PositionDecodeError(ValueError):
    """A structured position string that does not follow the grammar."""


@dataclass(frozen=True)
class ReaderSettings:
    font_size: int = DEFAULT_FONT_SIZE
    theme: str = Theme.LIGHT.value

    def __post_init__(self):
        if not isinstance(self.font_size, int) or not MIN_FONT_SIZE <= self.font_size <= MAX_FONT_SIZE:
            raise ValueError(f"Font size must be between {MIN_FONT_SIZE} and {MAX_FONT_SIZE}")
        if self.theme not in (Theme.LIGHT.value, Theme.DARK.value):
            raise ValueError(f"Unknown theme: {self.theme}")


@dataclass(frozen=True)
class StructuredPosition:
    spine_index: int
    page_in_spine: Optional[int] = None


@dataclass(frozen=True)
class LegacyPosition:
    """An opaque standards-based location (e.g. an EPUB CFI), kept verbatim."""
    token: str


Position = Union[StructuredPosition, LegacyPosition]

START_POSITION = StructuredPosition(spine_index=0)


def encode_position(position: Position) -> str:
    if isinstance(position, LegacyPosition):
        return position.token
    encoded = f"spine:{position.spine_index}"
    if position.page_in_spine:
        encoded += f":page:{position.page_in_spine}"
    return encoded


def decode_position(value: str) -> Position:
    match = _SPINE_POSITION.match(value)
    if match:
        page = match.group(2)
        return StructuredPosition(int(match.group(1)), int(page) if page else None)
    if value.startswith('spine:'):
        raise PositionDecodeError(f"Malformed position: {value!r}")
    return LegacyPosition(value)


class ResumeController:
    """
    Restores and records where a user is in one book.

    `renderer` is anything with `apply_style(settings)`, `layout()`,
    `display(spine_index, page)` and `display_location(token)`, such as
    `document.PaginatedBook`. `store` is a `user_data.UserDataManager`.
    """

    def __init__(self, renderer, store, user_id: str, document_id: str):
        self.renderer = renderer
        self.store = store
        self.user_id = user_id
        self.document_id = document_id
        self.settings = ReaderSettings()
        self.resuming = False

    def resume(self):
        """Load settings and position, style the renderer, then navigate."""
        self.resuming = True
        try:
            record = self.store.load_position(self.user_id, self.document_id)
            position: Position = START_POSITION
            if record is not None:
                self.settings = record.settings
                try:
                    position = record.location
                except PositionDecodeError as e:
                    logger.warning("Ignoring saved position: %s", e)

            self.renderer.apply_style(self.settings)
            self.renderer.layout()
            return self._navigate(position)
        finally:
            self.resuming = False

    def _navigate(self, position: Position):
        if isinstance(position, LegacyPosition):
            try:
                return self.renderer.display_location(position.token)
            except ValueError as e:
                logger.warning("Cannot restore legacy location %r: %s", position.token, e)
                return self.renderer.display(0, 1)

        try:
            return self.renderer.display(position.spine_index, position.page_in_spine or 1)
        except IndexError:
            logger.warning("Saved spine index %d is out of range, starting over", position.spine_index)
            return self.renderer.display(0, 1)

    def on_relocated(self, location):
        """Persist user-driven navigation. Relocations during resume are ignored."""
        if self.resuming:
            return
        self.store.save_progress(
            self.user_id,
            self.document_id,
            StructuredPosition(location.spine_index, location.page),
            chapter_label=location.chapter_label,
            progress_percent=location.progress_percent,
            settings=self.settings,
        )

    def on_settings_changed(self, settings: ReaderSettings):
        """Apply new style and persist it, leaving the stored position alone."""
        self.settings = settings
        self.renderer.apply_style(settings)
        self.store.save_settings(self.user_id, self.document_id, settings)
