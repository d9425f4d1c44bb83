from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .store.types import ConversationHeader


def one_third_mark(max_context: int) -> float:
    return max_context / 3


def two_thirds_mark(max_context: int) -> float:
    return 2 * max_context / 3


def apply_token_count(
    header: ConversationHeader,
    total_tokens: int,
    *,
    max_context: int,
    latest_raw_id: int | None,
) -> ConversationHeader:
    """Return the header after recording a new total token count.

    Reaching a third of the context window pins ``token_threshold_one_third_id`` to the
    newest raw memory; reaching two thirds pins ``token_threshold_two_thirds_id`` and
    raises ``context_compaction_required``. A watermark is only set while it is unset and
    the flag is never cleared here; ``mark_compaction_handled`` re-arms both.
    """
    if max_context <= 0:
        raise ValueError("max_context must be positive")
    if total_tokens < 0:
        raise ValueError("total_tokens must be non-negative")

    one_third_id = header.token_threshold_one_third_id
    two_thirds_id = header.token_threshold_two_thirds_id
    compaction_required = header.context_compaction_required

    if latest_raw_id is not None:
        if one_third_id is None and total_tokens >= one_third_mark(max_context):
            one_third_id = latest_raw_id
        if two_thirds_id is None and total_tokens >= two_thirds_mark(max_context):
            two_thirds_id = latest_raw_id
            compaction_required = True

    return replace(
        header,
        total_token_count=total_tokens,
        token_threshold_one_third_id=one_third_id,
        token_threshold_two_thirds_id=two_thirds_id,
        context_compaction_required=compaction_required,
    )


def hot_window_start(header: ConversationHeader | None) -> int | None:
    """First raw memory id that must stay verbatim in the prompt, or None for all of them.

    While compaction is required the window starts at the one-third watermark. After it
    has been handled the window stays where it was pinned.
    """
    if header is None:
        return None
    if header.context_compaction_required and header.token_threshold_one_third_id is not None:
        return header.token_threshold_one_third_id
    return header.hot_window_start_id
