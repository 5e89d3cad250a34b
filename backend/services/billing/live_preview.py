"""
InvoLex Billing Engine - Live Billing Preview

Debounced preview generation while the user drafts a reply or a new email. Every
keystroke calls update(); the AI is only asked once the draft has been quiet for
the debounce delay.
"""

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional

from services.billing.ai_collaborator import BillingAI
from services.billing.config import LIVE_PREVIEW_DEBOUNCE_MS
from services.billing.models import AIPreview, Matter

logger = logging.getLogger(__name__)


def merge_previews(previous: Optional[AIPreview], latest: AIPreview) -> AIPreview:
    """The latest preview wins; fields it never fills are kept from the previous one."""
    if previous is None:
        return latest
    return replace(
        previous,
        description=latest.description,
        suggested_matter=latest.suggested_matter,
        suggested_hours=latest.suggested_hours,
        action_items=list(latest.action_items),
        detailed_breakdown=list(latest.detailed_breakdown),
    )


class LivePreviewDebouncer:
    def __init__(self, ai: BillingAI, delay_seconds: float = LIVE_PREVIEW_DEBOUNCE_MS / 1000):
        self.ai = ai
        self.delay_seconds = delay_seconds
        self.preview: Optional[AIPreview] = None
        self.is_generating = False
        self._task: Optional[asyncio.Task] = None

    def update(self, context_body: Optional[str], draft: str, matters: List[Matter]):
        """Restart the debounce window for a new draft text. Must run inside the event loop."""
        self.cancel()
        if not draft or not draft.strip():
            self.preview = None
            return
        self._task = asyncio.create_task(self._generate_after_delay(context_body, draft, matters))

    async def _generate_after_delay(self, context_body: Optional[str], draft: str, matters: List[Matter]):
        await asyncio.sleep(self.delay_seconds)
        self.is_generating = True
        try:
            latest = await self.ai.generate_live_preview(context_body, draft, matters)
            self.preview = merge_previews(self.preview, latest)
        except Exception as e:
            logger.warning("Live preview generation failed: %s", e)
        finally:
            self.is_generating = False

    async def wait(self) -> Optional[AIPreview]:
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.preview

    def cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.is_generating = False
