from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from conftest import T, make_exam
from exam_portal.models.exam_model import EXAM_TZ, Exam, Question
from exam_portal.models.session_state import AnswerBuffer
from exam_portal.models.submission_model import ExamSubmission, SubmissionStatus


def test_placeholders_are_normalized():
    exam = make_exam(title="NA", description="NA", instructions="NA")
    assert exam.title == "CS101 Final"
    assert exam.description == "Final examination for the course"
    assert exam.instructions == "Complete all questions within the given time frame."


def test_missing_numbers_use_defaults():
    exam = make_exam(duration_minutes=None, total_marks=None, exam_type=None)
    assert exam.duration_minutes == 60
    assert exam.total_marks == 100
    assert exam.is_online


def test_naive_times_are_exam_timezone():
    exam = Exam(id=7, start_time=datetime(2025, 5, 12, 9, 0), end_time=datetime(2025, 5, 12, 10, 0))
    assert exam.id == "7"
    assert exam.start_time.utcoffset() == EXAM_TZ.utcoffset(None)
    assert exam.start_time == T


def test_end_must_follow_start():
    with pytest.raises(ValidationError):
        make_exam(end_time=T - timedelta(minutes=1))


def test_structured_only_with_questions():
    assert not make_exam(exam_type="online").is_structured
    assert not make_exam(exam_type="written_online").is_structured


def test_question_options_need_two_entries():
    with pytest.raises(ValidationError):
        Question(id="q1", question_text="?", options=["only"])


def test_submission_answers_from_json_string():
    sub = ExamSubmission(id=1, exam_id=2, student_id=3, answers='{"5": "B"}', status="STARTED")
    assert sub.answers == {"5": "B"}
    assert sub.status is SubmissionStatus.STARTED
    assert sub.is_in_progress


def test_submission_bad_answers_become_empty():
    sub = ExamSubmission(id="1", exam_id="2", student_id="3", answers="not json", answer_text=None)
    assert sub.answers == {}
    assert sub.answer_text == ""
    assert sub.status is SubmissionStatus.NOT_STARTED


def test_graded_is_sealed():
    assert ExamSubmission(id="1", exam_id="2", student_id="3", status="graded").is_sealed


def test_answer_buffer_set():
    buf = AnswerBuffer()
    buf.set("q1", "A")
    buf.set(None, "essay")
    assert buf.answers == {"q1": "A"}
    assert buf.text == "essay"
    buf.set("q1", None)
    assert buf.answered_count == 0
