import unittest

from services.csv_parser import detect_separator, parse_csv_text, split_quoted


class TestDetectSeparator(unittest.TestCase):
    def test_most_frequent_wins(self):
        self.assertEqual(detect_separator("a;b;c,d,e,f,g,h"), ",")

    def test_tie_goes_to_semicolon(self):
        self.assertEqual(detect_separator("a;b,c"), ";")

    def test_tab(self):
        self.assertEqual(detect_separator("ID\tНазвание\tСтатус"), "\t")

    def test_no_separator_defaults_to_semicolon(self):
        self.assertEqual(detect_separator("ID"), ";")


class TestSplitQuoted(unittest.TestCase):
    def test_separator_inside_quotes(self):
        self.assertEqual(split_quoted('"a;b";c', ";"), ["a;b", "c"])

    def test_doubled_quote(self):
        self.assertEqual(split_quoted('"say ""hi""";x', ";"), ['say "hi"', "x"])

    def test_trailing_empty_field(self):
        self.assertEqual(split_quoted("a;b;", ";"), ["a", "b", ""])


class TestParseCsvText(unittest.TestCase):
    def test_rows_keyed_by_header(self):
        rows = parse_csv_text("ID;Статус\n1;Новая\n2;В работе")
        self.assertEqual(rows, [{"ID": "1", "Статус": "Новая"}, {"ID": "2", "Статус": "В работе"}])

    def test_crlf_blank_lines_and_padding(self):
        text = "A;B;C\r\n1;2;3\r\n\r\n4;5\r\n;;\r\n"

        rows = parse_csv_text(text)

        self.assertEqual(rows, [
            {"A": "1", "B": "2", "C": "3"},
            {"A": "4", "B": "5", "C": ""},
        ])

    def test_values_are_trimmed(self):
        rows = parse_csv_text('ID , Название\n 7 , " Насос "')
        self.assertEqual(rows, [{"ID": "7", "Название": "Насос"}])

    def test_comma_separated_with_quoted_commas(self):
        rows = parse_csv_text('ID,Комментарии\n1,"срочно, до пятницы"')
        self.assertEqual(rows[0]["Комментарии"], "срочно, до пятницы")

    def test_quoted_separator_in_header(self):
        rows = parse_csv_text('"a;b";c\n1;2')
        self.assertEqual(list(rows[0]), ["a;b", "c"])
        self.assertEqual(rows[0], {"a;b": "1", "c": "2"})

    def test_header_only(self):
        self.assertEqual(parse_csv_text("ID;Статус\n"), [])

    def test_empty_text(self):
        self.assertEqual(parse_csv_text(""), [])


if __name__ == "__main__":
    unittest.main()
