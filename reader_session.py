"""
One open book for one user: the rendered pages, the selection state, the
resume/persist logic and the explanation panel, owned together.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from document import PaginatedBook, RenderedLocation
from explain_service import ExplanationError, ExplanationResult, ExplanationService
from reading_position import ReaderSettings, ResumeController
from selection import Idle, SelectionResult, SelectionState, SelectionStateMachine, Waiting
from spine import Chapter

logger = logging.getLogger(__name__)


@dataclass
class PanelState:
    selection_id: Optional[str] = None
    selected_text: str = ""
    context: str = ""
    completion: str = ""
    from_cache: bool = False
    entry_id: Optional[str] = None
    loading: bool = False
    error: Optional[str] = None


class ExplanationPanel:
    """
    Shows the explanation of the latest selection. Opening it for a new
    selection resets everything; an answer that arrives for a selection that
    is no longer shown is dropped.
    """

    def __init__(self):
        self.state = PanelState()

    @property
    def is_open(self) -> bool:
        return self.state.selection_id is not None

    def open(self, result: SelectionResult):
        self.state = PanelState(
            selection_id=result.selection_id,
            selected_text=result.selected_text,
            context=result.context,
        )

    def close(self):
        self.state = PanelState()

    async def load(self, service: ExplanationService, user_id: str, document_id: str,
                   force_refresh: bool = False) -> Optional[ExplanationResult]:
        """Fetch the explanation; returns None if superseded or failed."""
        if not self.is_open:
            return None

        selection_id = self.state.selection_id
        self.state.loading = True
        self.state.error = None
        try:
            result = await service.explain(
                user_id,
                self.state.selected_text,
                self.state.context,
                document_id=document_id,
                force_refresh=force_refresh,
            )
        except ExplanationError as e:
            if self.state.selection_id == selection_id:
                self.state.loading = False
                self.state.error = str(e)
            return None

        if self.state.selection_id != selection_id:
            logger.debug("Dropping explanation for superseded selection %s", selection_id)
            return None

        self.state.loading = False
        self.state.completion = result.text
        self.state.from_cache = result.from_cache
        self.state.entry_id = result.entry_id
        return result


class ReaderSession:
    """Reader-session context for (user, book)."""

    def __init__(self, user_id: str, document_id: str, chapters: List[Chapter], store,
                 machine: Optional[SelectionStateMachine] = None, **layout):
        self.user_id = user_id
        self.document_id = document_id
        self.book = PaginatedBook(chapters, **layout)
        self.machine = machine or SelectionStateMachine()
        self.selection: SelectionState = Idle()
        self.resume_controller = ResumeController(self.book, store, user_id, document_id)
        self.book.on_relocated(self.resume_controller.on_relocated)
        self.panel = ExplanationPanel()

    @property
    def location(self) -> RenderedLocation:
        return self.book.location

    @property
    def settings(self) -> ReaderSettings:
        return self.resume_controller.settings

    @property
    def is_waiting(self) -> bool:
        return isinstance(self.selection, Waiting)

    def open(self) -> RenderedLocation:
        return self.resume_controller.resume()

    def click(self, x: float, y: float) -> Optional[SelectionResult]:
        self.selection, result = self.machine.handle_click(self.selection, self.book.document, x, y)
        if result is not None:
            self.panel.open(result)
        return result

    def _before_rerender(self):
        # Overlays and pending anchors do not survive a re-render
        self.selection = self.machine.cancel(self.selection, self.book.document)

    def next_page(self) -> bool:
        self._before_rerender()
        return self.book.next_page()

    def prev_page(self) -> bool:
        self._before_rerender()
        return self.book.prev_page()

    def go_to_chapter(self, spine_index: int) -> RenderedLocation:
        self._before_rerender()
        return self.book.display(spine_index, 1)

    def change_settings(self, settings: ReaderSettings):
        self._before_rerender()
        self.resume_controller.on_settings_changed(settings)

    async def explain(self, service: ExplanationService,
                      force_refresh: bool = False) -> Optional[ExplanationResult]:
        return await self.panel.load(service, self.user_id, self.document_id, force_refresh)
