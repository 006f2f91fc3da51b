import unittest

from agentlogs.previews import (
    clean_user_message,
    is_command_envelope,
    preview_from_text,
    strip_system_reminders,
    truncate_preview,
)


class PreviewTests(unittest.TestCase):
    def test_truncates_to_eighty_characters(self) -> None:
        text = "word " * 40
        preview = truncate_preview(text)
        assert preview is not None
        self.assertEqual(len(preview), 80)
        self.assertTrue(preview.endswith("…"))

    def test_short_text_is_collapsed_not_truncated(self) -> None:
        self.assertEqual(truncate_preview("  fix   the\n\nbuild  "), "fix the build")
        self.assertIsNone(truncate_preview("   "))
        self.assertIsNone(truncate_preview(None))

    def test_system_reminders_are_removed(self) -> None:
        self.assertEqual(strip_system_reminders("Do it<system-reminder>hidden</system-reminder>"), "Do it")

    def test_noise_lines_are_skipped(self) -> None:
        text = "<command-name>/clear</command-name>\n[Request interrupted by user]\nnpm ERR! missing script\n---\nPlease fix the build"
        self.assertEqual(clean_user_message(text), "Please fix the build")

    def test_noise_with_prompt_cue_is_kept(self) -> None:
        self.assertEqual(clean_user_message("error: why does this fail?"), "error: why does this fail?")

    def test_only_first_lines_are_used(self) -> None:
        text = "one\ntwo\nthree\nfour"
        self.assertEqual(clean_user_message(text), "one two three")

    def test_non_string_input(self) -> None:
        self.assertIsNone(clean_user_message(None))
        self.assertIsNone(preview_from_text({"text": "hi"}))

    def test_command_envelope_detection(self) -> None:
        self.assertTrue(is_command_envelope("<command-message>review</command-message>"))
        self.assertTrue(is_command_envelope("<local-command-stdout>ok</local-command-stdout>"))
        self.assertFalse(is_command_envelope("review <command-name>"))


if __name__ == "__main__":
    unittest.main()
