"""Tests for degraded-output detection."""

from novel_workbench.services.degradation_detector import DegradationOptions, detect_repeating_characters


class TestDetectRepeatingCharacters:
    """Tests for detect_repeating_characters."""

    def test_short_text_never_flagged(self):
        assert not detect_repeating_characters("a" * 99)

    def test_normal_text_not_flagged(self):
        text = "The quick brown fox jumps over the lazy dog. " * 5
        assert not detect_repeating_characters(text)

    def test_long_character_run_flagged(self):
        assert detect_repeating_characters("Intro. " + "啊" * 95)

    def test_character_run_present_in_original_is_allowed(self):
        text = "Intro. " + "—" * 95
        assert not detect_repeating_characters(text, original_text="—" * 100)

    def test_repeated_pattern_flagged(self):
        text = "Some real content here. " + "哈哈" * 40
        assert detect_repeating_characters(text, options=DegradationOptions(repeat_threshold=1000))

    def test_repeated_pattern_present_in_original_is_allowed(self):
        text = "Some real content here. " + "ab" * 40
        original = "ab" * 40
        assert not detect_repeating_characters(
            text, original_text=original, options=DegradationOptions(repeat_threshold=1000),
        )

    def test_custom_thresholds(self):
        text = "x" * 50 + "y" * 50
        assert not detect_repeating_characters(text)
        assert detect_repeating_characters(text, options=DegradationOptions(repeat_threshold=40))
