"""Detect degraded AI output: long runs of one character or a short pattern."""
from __future__ import annotations

import logging
from dataclasses import dataclass

log = logging.getLogger(__name__)

MIN_PATTERN_LENGTH = 2
MAX_PATTERN_LENGTH = 5
# If the source repeats almost as much as the output, the repetition is content.
ORIGINAL_PATTERN_SIMILARITY_RATIO = 0.75


@dataclass
class DegradationOptions:
    repeat_threshold: int = 80        # consecutive identical characters
    repeat_check_window: int = 100    # only the tail of the text is checked
    pattern_repeat_threshold: int = 30
    log_label: str = "degradation"


def _max_char_run(text: str, char: str) -> int:
    best = run = 0
    for c in text:
        if c == char:
            run += 1
            best = max(best, run)
        else:
            run = 0
    return best


def _max_pattern_block_length(text: str, window: int) -> int:
    segment = text[-min(window, len(text)):]
    best = 0
    for plen in range(MIN_PATTERN_LENGTH, MAX_PATTERN_LENGTH + 1):
        if len(segment) < plen * 2:
            continue
        for start in range(0, len(segment) - plen * 2 + 1):
            pattern = segment[start:start + plen]
            count = 1
            cursor = start + plen
            while cursor + plen <= len(segment) and segment[cursor:cursor + plen] == pattern:
                count += 1
                cursor += plen
            if count > 1:
                best = max(best, count * plen)
    return best


def detect_repeating_characters(
    text: str,
    original_text: str | None = None,
    options: DegradationOptions | None = None,
) -> bool:
    """True when the tail of text looks like a generation stuck in a loop."""
    opts = options or DegradationOptions()
    if not text or len(text) < opts.repeat_check_window:
        return False

    recent = text[-opts.repeat_check_window:]

    i = 0
    while i < len(recent):
        char = recent[i]
        j = i + 1
        while j < len(recent) and recent[j] == char:
            j += 1
        run = j - i
        if run >= opts.repeat_threshold:
            if original_text and _max_char_run(original_text, char) >= opts.repeat_threshold * 0.5:
                i = j
                continue
            log.warning("[%s] character %r repeated %d times in last %d chars (threshold %d)",
                        opts.log_label, char, run, opts.repeat_check_window, opts.repeat_threshold)
            return True
        i = j

    original_block: int | None = None
    for plen in range(MIN_PATTERN_LENGTH, MAX_PATTERN_LENGTH + 1):
        if len(recent) < plen * 10:
            continue
        pattern = recent[-plen:]
        count = 1
        pos = len(recent) - plen * 2
        while pos >= 0 and recent[pos:pos + plen] == pattern:
            count += 1
            pos -= plen
        if count < opts.pattern_repeat_threshold:
            continue
        if original_text:
            if original_block is None:
                original_block = _max_pattern_block_length(original_text, opts.repeat_check_window)
            if original_block > 0 and original_block >= count * plen * ORIGINAL_PATTERN_SIMILARITY_RATIO:
                continue
        log.warning("[%s] pattern %r (len %d) repeated %d times in last %d chars (threshold %d)",
                    opts.log_label, pattern, plen, count, opts.repeat_check_window,
                    opts.pattern_repeat_threshold)
        return True

    return False
