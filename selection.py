"""
Two-point text selection for the reader view.

The user taps a start word and an end word. Both taps are resolved to exact
character offsets in the rendered text, expanded to word boundaries and
turned into a selection with a bounded context window, which is what the
explanation panel asks the AI about.

Selection state is a plain value (`Idle` or `Waiting`) that the reader
session passes into `SelectionStateMachine.handle_click` and stores back.
"""

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from document import DocumentAdapter, Highlight, Overlay

logger = logging.getLogger(__name__)

WORD_CHAR = re.compile(r'[A-Za-z0-9]')
CONTEXT_RADIUS = 100
ELLIPSIS = "..."
MIN_SELECTION_LENGTH = 2
GUARD_DELAY_SECONDS = 0.5


# --- Data structures ---

@dataclass(frozen=True)
class TextAnchor:
    """One boundary of a selection, valid only for the render generation it was taken in."""
    node: object
    offset: int
    generation: int


@dataclass(frozen=True)
class WordSpan:
    anchor: TextAnchor
    start: int
    end: int
    text: str

    @property
    def is_empty(self) -> bool:
        return self.start == self.end


@dataclass(frozen=True)
class SelectionRange:
    start: TextAnchor
    end: TextAnchor


@dataclass(frozen=True)
class ContextWindow:
    selected_text: str
    context: str


@dataclass(frozen=True)
class SelectionResult:
    """What the explanation panel receives once a selection completes."""
    selection_id: str
    range: SelectionRange
    window: ContextWindow

    @property
    def selected_text(self) -> str:
        return self.window.selected_text

    @property
    def context(self) -> str:
        return self.window.context


@dataclass(frozen=True)
class Idle:
    highlight: Optional[Highlight] = None
    guard_until: float = 0.0


@dataclass(frozen=True)
class Waiting:
    anchor: TextAnchor
    word: WordSpan
    overlay: Optional[Overlay]
    highlight: Optional[Highlight] = None


SelectionState = Union[Idle, Waiting]


# --- Word boundaries ---

def find_word_bounds(text: str, offset: int) -> Tuple[int, int]:
    """Expand an offset to the run of [A-Za-z0-9] around it."""
    offset = min(max(offset, 0), len(text))
    start = end = offset
    while start > 0 and WORD_CHAR.match(text[start - 1]):
        start -= 1
    while end < len(text) and WORD_CHAR.match(text[end]):
        end += 1
    return start, end


def resolve_word(document: DocumentAdapter, node, offset: int,
                 expand_to_end: bool = False) -> WordSpan:
    """
    Resolve a raw (node, offset) to the word around it. The anchor sits at the
    word start for a first click and at the word end for a second one.
    A click on punctuation or whitespace gives an empty span.
    """
    text = document.node_text(node)
    start, end = find_word_bounds(text, offset)
    anchor = TextAnchor(node=node, offset=end if expand_to_end else start,
                        generation=document.generation)
    return WordSpan(anchor=anchor, start=start, end=end, text=text[start:end])


# --- Context ---

def extract_context(selected_text: str, ancestor_text: str,
                    radius: int = CONTEXT_RADIUS) -> ContextWindow:
    """
    Embed the selection in at most `radius` characters on each side, taken
    around its first occurrence in the ancestor text.
    """
    index = ancestor_text.find(selected_text) if selected_text else -1
    if index == -1:
        return ContextWindow(selected_text=selected_text, context=selected_text)

    start = max(0, index - radius)
    end = min(len(ancestor_text), index + len(selected_text) + radius)
    context = ancestor_text[start:end]
    if start > 0:
        context = ELLIPSIS + context
    if end < len(ancestor_text):
        context = context + ELLIPSIS
    return ContextWindow(selected_text=selected_text, context=context)


# --- State machine ---

class SelectionStateMachine:
    """IDLE/WAITING two-click protocol."""

    def __init__(self, min_length: int = MIN_SELECTION_LENGTH,
                 guard_delay: float = GUARD_DELAY_SECONDS,
                 context_radius: int = CONTEXT_RADIUS,
                 clock: Callable[[], float] = time.monotonic):
        self.min_length = min_length
        self.guard_delay = guard_delay
        self.context_radius = context_radius
        self.clock = clock

    def handle_click(self, state: SelectionState, document: DocumentAdapter,
                     x: float, y: float) -> Tuple[SelectionState, Optional[SelectionResult]]:
        if isinstance(state, Waiting):
            return self._second_click(state, document, x, y)
        return self._first_click(state, document, x, y), None

    def cancel(self, state: SelectionState, document: DocumentAdapter) -> Idle:
        """Drop any pending anchor and its overlay."""
        if isinstance(state, Waiting):
            if state.overlay is not None:
                document.remove_overlay(state.overlay)
            return Idle(highlight=state.highlight)
        return state

    def clear(self, state: SelectionState, document: DocumentAdapter) -> Idle:
        """Cancel and also remove the persistent highlight."""
        state = self.cancel(state, document)
        if state.highlight is not None:
            document.clear_highlight(state.highlight)
        return Idle()

    def _first_click(self, state: Idle, document: DocumentAdapter,
                     x: float, y: float) -> SelectionState:
        if self.clock() < state.guard_until:
            logger.debug("Click ignored during guard delay")
            return state

        # The previous highlight goes before any anchor is taken, since
        # unwrapping it rebuilds the text nodes.
        if state.highlight is not None:
            document.clear_highlight(state.highlight)

        caret = document.caret_at(x, y)
        if caret is None:
            logger.debug("No text under first click at (%s, %s)", x, y)
            return Idle()

        node, offset = caret
        word = resolve_word(document, node, offset, expand_to_end=False)
        if word.is_empty:
            logger.debug("First click is not on a word")
            return Idle()

        rects = document.range_rects(node, word.start, node, word.end)
        overlay = document.add_overlay(rects)
        logger.debug("Start anchored on %r", word.text)
        return Waiting(anchor=word.anchor, word=word, overlay=overlay)

    def _second_click(self, state: Waiting, document: DocumentAdapter,
                      x: float, y: float) -> Tuple[SelectionState, Optional[SelectionResult]]:
        if state.anchor.generation != document.generation:
            logger.debug("Start anchor belongs to an earlier rendering, cancelling")
            return self.cancel(state, document), None

        caret = document.caret_at(x, y)
        if caret is None:
            logger.debug("No text under second click, cancelling")
            return self.cancel(state, document), None

        node, offset = caret
        end_word = resolve_word(document, node, offset, expand_to_end=True)
        if end_word.is_empty:
            logger.debug("Second click is not on a word, cancelling")
            return self.cancel(state, document), None

        idle = self.cancel(state, document)

        first = state.word
        generation = document.generation
        if document.compare(node, end_word.start, first.anchor.node, first.start) < 0:
            # Clicked out of visual order: the later word ends the range
            start = TextAnchor(node, end_word.start, generation)
            end = TextAnchor(first.anchor.node, first.end, generation)
        else:
            start = first.anchor
            end = end_word.anchor

        selected_text = document.range_text(start.node, start.offset, end.node, end.offset).strip()
        if len(selected_text) < self.min_length:
            logger.debug("Selection %r too short, ignoring", selected_text)
            return idle, None

        ancestor_text = document.common_ancestor_text(start.node, end.node)
        window = extract_context(selected_text, ancestor_text, self.context_radius)

        highlight = document.highlight_range(start.node, start.offset, end.node, end.offset)
        result = SelectionResult(
            selection_id=uuid.uuid4().hex,
            range=SelectionRange(start=start, end=end),
            window=window,
        )
        logger.info("Selected %r", selected_text)
        return Idle(highlight=highlight, guard_until=self.clock() + self.guard_delay), result
