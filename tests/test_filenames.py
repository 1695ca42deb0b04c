import unittest

from fileflow import filenames


def mis_encode(name: str) -> str:
    """Return *name* as it looks when its UTF-8 bytes are read as Latin-1."""

    return name.encode("utf-8").decode("latin-1")


class RepairMojibakeTests(unittest.TestCase):
    def test_repairs_utf8_read_as_latin1(self):
        result = filenames.repair_mojibake(mis_encode("报告.txt"))
        self.assertEqual(result, filenames.DecodeResult("报告.txt", True))

    def test_keeps_names_already_decoded(self):
        result = filenames.repair_mojibake("报告.txt")
        self.assertEqual(result, filenames.DecodeResult("报告.txt", False))

    def test_keeps_latin1_names_that_are_not_utf8(self):
        result = filenames.repair_mojibake("café.txt")
        self.assertFalse(result.decoded)
        self.assertEqual(result.value, "café.txt")

    def test_ascii_is_unchanged(self):
        self.assertEqual(filenames.repair_mojibake("notes.md").value, "notes.md")


class PercentDecodeTests(unittest.TestCase):
    def test_decodes_utf8_escapes(self):
        result = filenames.percent_decode("%E6%8A%A5%E5%91%8A.txt")
        self.assertEqual(result, filenames.DecodeResult("报告.txt", True))

    def test_plus_is_not_a_space(self):
        self.assertEqual(filenames.percent_decode("a+b%20c.txt").value, "a+b c.txt")

    def test_malformed_escape_keeps_whole_name(self):
        result = filenames.percent_decode("50%25 off 100%.txt")
        self.assertFalse(result.decoded)
        self.assertEqual(result.value, "50%25 off 100%.txt")

    def test_invalid_utf8_escape_keeps_name(self):
        result = filenames.percent_decode("%E4%BD.txt")
        self.assertFalse(result.decoded)
        self.assertEqual(result.value, "%E4%BD.txt")


class SanitizeTests(unittest.TestCase):
    def test_every_illegal_character_is_replaced(self):
        for char in '<>:"/\\|?*':
            with self.subTest(char=char):
                self.assertEqual(filenames.sanitize_filename(f"a{char}b"), "a_b")

    def test_display_name_has_no_illegal_characters(self):
        name = filenames.decode_display_name('re:port<1>|"final"?*.txt')
        self.assertEqual(name, "re_port_1___final___.txt")

    def test_encoded_slash_is_sanitized_after_decoding(self):
        self.assertEqual(filenames.decode_display_name("..%2F..%2Fetc%2Fpasswd"), ".._.._etc_passwd")

    def test_bytes_input_is_read_as_latin1(self):
        self.assertEqual(filenames.decode_display_name("报告.txt".encode("utf-8")), "报告.txt")

    def test_never_raises_for_any_latin1_text(self):
        samples = [bytes(range(start, start + 32)).decode("latin-1") for start in range(0, 256, 32)]
        samples += ["", "%", "%%", "%zz", "\x00", "\xff\xfe"]
        for sample in samples:
            with self.subTest(sample=sample):
                self.assertIsInstance(filenames.decode_display_name(sample), str)
                self.assertIsInstance(filenames.resolve_storage_name(sample, {sample}), str)


class SplitExtensionTests(unittest.TestCase):
    def test_splits_on_last_dot(self):
        self.assertEqual(filenames.split_extension("archive.tar.gz"), ("archive.tar", ".gz"))

    def test_dotfiles_have_no_extension(self):
        self.assertEqual(filenames.split_extension(".bashrc"), (".bashrc", ""))
        self.assertEqual(filenames.split_extension(".."), ("..", ""))

    def test_name_without_dot(self):
        self.assertEqual(filenames.split_extension("README"), ("README", ""))


class ResolveStorageNameTests(unittest.TestCase):
    def test_free_name_is_kept(self):
        self.assertEqual(filenames.resolve_storage_name("a.txt", set()), "a.txt")

    def test_first_collision_gets_suffix_one(self):
        self.assertEqual(filenames.resolve_storage_name("a.txt", {"a.txt"}), "a(1).txt")

    def test_counter_advances_past_taken_suffixes(self):
        existing = {"a.txt", "a(1).txt"}
        self.assertEqual(filenames.resolve_storage_name("a.txt", existing), "a(2).txt")

    def test_counter_restarts_per_call(self):
        existing = {"b.txt", "b(1).txt", "b(2).txt"}
        self.assertEqual(filenames.resolve_storage_name("b.txt", existing), "b(3).txt")
        self.assertEqual(filenames.resolve_storage_name("c.txt", {"c.txt"}), "c(1).txt")

    def test_suffix_without_extension(self):
        self.assertEqual(filenames.resolve_storage_name("Makefile", {"Makefile"}), "Makefile(1)")

    def test_empty_name_uses_bare_counter(self):
        self.assertEqual(filenames.resolve_storage_name("", {""}), "(1)")
        self.assertEqual(filenames.resolve_storage_name("", {"", "(1)"}), "(2)")

    def test_collision_checked_against_sanitized_name(self):
        self.assertEqual(filenames.resolve_storage_name("a?.txt", {"a_.txt"}), "a_(1).txt")

    def test_mis_encoded_name_is_repaired_before_collision_check(self):
        existing = {"报告.txt"}
        self.assertEqual(filenames.resolve_storage_name(mis_encode("报告.txt"), existing), "报告(1).txt")


if __name__ == "__main__":
    unittest.main()
