import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from answer_evaluator import is_correct, normalize_answer, parse_int
from protocol import Submission


class TestNormalization:
    def test_trims_and_lowercases(self):
        assert normalize_answer("  Paris ") == "paris"

    def test_integral_float_prints_as_int(self):
        assert normalize_answer(5.0) == "5"

    def test_bools_and_lists(self):
        assert normalize_answer(True) == "true"
        assert normalize_answer(["A", "B"]) == "a,b"

    def test_parse_int_leading_digits(self):
        assert parse_int("42abc") == 42
        assert parse_int("  -7") == -7
        assert parse_int("5.9") == 5
        assert parse_int("abc") is None
        assert parse_int(None) is None


class TestStringComparison:
    def test_case_and_whitespace_insensitive(self):
        assert is_correct(" b ", "B", "letters")

    def test_mismatch(self):
        assert not is_correct("C", "B", "letters")

    def test_number_vs_text_option(self):
        """Multiple-choice answers compare as text regardless of wire type."""
        assert is_correct(2, "2", "multiple-choice")

    def test_no_type_falls_back_to_text(self):
        assert is_correct("Yes", "yes")


class TestNumbers:
    def test_leading_zero(self):
        assert is_correct("05", "5", "numbers")

    def test_parse_int_truncates(self):
        assert is_correct("5.7", "5", "numbers")

    def test_numeric_submission(self):
        assert is_correct(12, "12", "numbers")
        assert is_correct(12.0, 12, "numbers")

    def test_zero_is_a_valid_answer(self):
        assert is_correct("0", "0", "numbers")
        assert is_correct({"answer": 0}, 0, "numbers")
        assert is_correct(Submission(value=0, question_type="numbers"), 0)

    def test_bare_zero_is_no_submission(self):
        assert not is_correct(0, 0, "numbers")
        assert not is_correct(0.0, "0", "letters")

    def test_unparseable(self):
        assert not is_correct("abc", "5", "numbers")
        assert not is_correct("5", "n/a", "numbers")

    def test_wrong_number(self):
        assert not is_correct("6", "5", "numbers")


class TestBlankInputs:
    @pytest.mark.parametrize("submitted", [None, "", False, float("nan")])
    def test_blank_submission(self, submitted):
        assert not is_correct(submitted, "A", "letters")

    @pytest.mark.parametrize("correct", [None, ""])
    def test_blank_correct_answer(self, correct):
        assert not is_correct("A", correct, "letters")


class TestSubmissionShapes:
    def test_submission_type_wins(self):
        """The type recorded at submit time decides the comparison rule."""
        sub = Submission(value="7 apples", question_type="numbers")
        assert is_correct(sub, "7", "letters")

    def test_mapping_submission(self):
        assert is_correct({"answer": "B", "questionType": "letters"}, "b")

    def test_go_wide_any_match(self):
        sub = Submission(value="A", question_type="letters", all_answers=("A", "C"))
        assert is_correct(sub, "c", "letters")
        assert not is_correct(sub, "B", "letters")

    def test_go_wide_mapping(self):
        assert is_correct({"answer": ["A", "D"], "allAnswers": ["A", "D"]}, "D")

    def test_empty_all_answers_uses_value(self):
        sub = Submission(value="B", question_type="letters", all_answers=())
        assert is_correct(sub, "B")

    def test_all_answers_without_answer_key(self):
        assert is_correct({"allAnswers": ["B", "D"]}, "D")
        assert not is_correct({"allAnswers": ["B", "D"]}, "C")


class TestNumberBoundaries:
    def test_leading_zero_vs_number(self):
        assert is_correct("07", 7, "numbers")

    def test_decimal_text_parses_integer_part(self):
        assert is_correct("7.0", 7, "numbers")

    def test_non_numeric_text(self):
        assert not is_correct("seven", 7, "numbers")

    def test_non_ascii_digits_do_not_parse(self):
        assert not is_correct("١٢", 12, "numbers")
        assert not is_correct("１２", 12, "numbers")
        assert parse_int("١٢") is None
