import unittest

from services.text_decoder import read_file_smart


class TestReadFileSmart(unittest.TestCase):
    def test_utf8_cyrillic(self):
        self.assertEqual(read_file_smart("Ответственный;Стадия".encode("utf-8")), "Ответственный;Стадия")

    def test_windows_1251_fallback(self):
        buffer = "Ответственный;Стадия сделки".encode("cp1251")

        text = read_file_smart(buffer)

        self.assertEqual(text, "Ответственный;Стадия сделки")
        self.assertNotIn("\ufffd", text)

    def test_windows_1251_with_unassigned_byte(self):
        buffer = "Ответственный;Стадия\nИван;Новая".encode("cp1251") + b"\x98"

        text = read_file_smart(buffer)

        self.assertEqual(text, "Ответственный;Стадия\nИван;Новая\ufffd")

    def test_few_bad_bytes_stay_utf8(self):
        text = read_file_smart(b"ID;Name\n1;abc\xff")
        self.assertTrue(text.startswith("ID;Name"))
        self.assertEqual(text.count("\ufffd"), 1)

    def test_bom_is_stripped(self):
        self.assertEqual(read_file_smart("\ufeffID;Статус".encode("utf-8")), "ID;Статус")

    def test_empty_buffer(self):
        self.assertEqual(read_file_smart(b""), "")


if __name__ == "__main__":
    unittest.main()
