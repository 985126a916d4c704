"""Unit tests for attempt scoring, the section timer and leaderboard ranking."""

# pylint: disable=missing-function-docstring, import-error
import unittest
from datetime import datetime, timedelta

import scoring


def question(qid, correct="a", **extra):
    return {
        "id": qid,
        "text": f"Domanda {qid}",
        "answers": [{"id": "a", "text": "A", "is_correct": correct == "a"},
                    {"id": "b", "text": "B", "is_correct": correct == "b"}],
        **extra,
    }


class ScoreAttemptTest(unittest.TestCase):
    """Scoring of a submitted attempt."""

    def setUp(self):
        self.simulation = {
            "correct_points": 1.5,
            "wrong_points": -0.4,
            "blank_points": 0.0,
            "max_score": 4.5,
            "passing_score": 2,
            "questions": [question("q1"), question("q2"), question("q3")],
        }

    def test_correct_wrong_and_blank(self):
        answers = [
            {"question_id": "q1", "answer_id": "a"},
            {"question_id": "q2", "answer_id": "b"},
        ]

        result = scoring.score_attempt(self.simulation, answers)

        self.assertEqual(result["correct_answers"], 1)
        self.assertEqual(result["wrong_answers"], 1)
        self.assertEqual(result["blank_answers"], 1)
        self.assertEqual(result["total_score"], 1.1)
        self.assertEqual(result["percentage_score"], round(1.1 / 4.5 * 100, 2))
        self.assertFalse(result["passed"])

    def test_passed_when_score_reaches_passing_score(self):
        answers = [{"question_id": "q1", "answer_id": "a"}, {"question_id": "q2", "answer_id": "a"}]

        result = scoring.score_attempt(self.simulation, answers)

        self.assertEqual(result["total_score"], 3.0)
        self.assertTrue(result["passed"])

    def test_no_passing_score_means_passed_is_none(self):
        self.simulation["passing_score"] = None
        self.assertIsNone(scoring.score_attempt(self.simulation, [])["passed"])

    def test_percentage_is_zero_without_max_score(self):
        self.simulation["max_score"] = None
        result = scoring.score_attempt(self.simulation, [{"question_id": "q1", "answer_id": "a"}])
        self.assertEqual(result["percentage_score"], 0)

    def test_evaluated_answers_cover_every_question(self):
        result = scoring.score_attempt(self.simulation, [{"question_id": "q3", "answer_id": "a", "time_spent": 12}])

        self.assertEqual([a["question_id"] for a in result["answers"]], ["q1", "q2", "q3"])
        self.assertEqual(result["answers"][2]["time_spent"], 12)
        self.assertTrue(result["answers"][2]["is_correct"])
        self.assertIsNone(result["answers"][0]["answer_id"])


class QuestionPointsTest(unittest.TestCase):
    """Resolution order of per-question points."""

    def test_simulation_points_by_default(self):
        sim = {"correct_points": 2, "wrong_points": -0.5}
        self.assertEqual(scoring.question_points(sim, question("q", points=5, negative_points=-1)), (2, -0.5))

    def test_question_points_when_enabled(self):
        sim = {"use_question_points": True, "correct_points": 2, "wrong_points": -0.5}
        self.assertEqual(scoring.question_points(sim, question("q", points=5, negative_points=-1)), (5, -1))

    def test_custom_points_win(self):
        sim = {"use_question_points": True}
        q = question("q", points=5, negative_points=-1, custom_points=3, custom_negative_points=0)
        self.assertEqual(scoring.question_points(sim, q), (3, 0))

    def test_default_max_score(self):
        sim = {"correct_points": 1.5, "questions": [question("q1"), question("q2")]}
        self.assertEqual(scoring.default_max_score(sim), 3.0)

    def test_strip_correctness_hides_flags(self):
        stripped = scoring.strip_correctness({"questions": [question("q1")]})
        self.assertNotIn("is_correct", stripped["questions"][0]["answers"][0])


class SectionTimerTest(unittest.TestCase):
    """Sequential timed sections."""

    def setUp(self):
        self.start = datetime(2026, 3, 1, 9, 0)
        self.simulation = {
            "has_sections": True,
            "questions": [question("q1"), question("q2"), question("q3")],
            "sections": [
                {"id": "s2", "name": "Logica", "duration_minutes": 20, "question_ids": ["q2", "q3"], "order": 1},
                {"id": "s1", "name": "Matematica", "duration_minutes": 10, "question_ids": ["q1"], "order": 0},
            ],
        }
        self.result = {
            "started_at": self.start,
            "section_started_at": self.start,
            "current_section_index": 0,
            "completed_sections": [],
        }

    def test_sections_follow_order_field(self):
        self.assertEqual([s["id"] for s in scoring.ordered_sections(self.simulation)], ["s1", "s2"])

    def test_remaining_seconds_floors_at_zero(self):
        section = {"duration_minutes": 10}
        self.assertEqual(scoring.remaining_seconds(section, self.start, self.start + timedelta(minutes=4)), 360)
        self.assertEqual(scoring.remaining_seconds(section, self.start, self.start + timedelta(hours=1)), 0)

    def test_nothing_changes_before_expiry(self):
        now = self.start + timedelta(minutes=5)
        self.assertEqual(scoring.advance_expired_sections(self.simulation, self.result, now), {})

    def test_expired_section_advances_with_clock_from_expiry(self):
        now = self.start + timedelta(minutes=12)

        changes = scoring.advance_expired_sections(self.simulation, self.result, now)

        self.assertEqual(changes["current_section_index"], 1)
        self.assertEqual(changes["completed_sections"], [0])
        self.assertEqual(changes["section_started_at"], self.start + timedelta(minutes=10))

    def test_cascade_past_last_section(self):
        now = self.start + timedelta(minutes=45)

        changes = scoring.advance_expired_sections(self.simulation, self.result, now)

        self.assertEqual(changes["current_section_index"], 2)
        self.assertEqual(changes["completed_sections"], [0, 1])
        self.assertIsNone(changes["section_started_at"])

    def test_complete_section_restarts_clock(self):
        now = self.start + timedelta(minutes=3)

        changes = scoring.complete_section(self.simulation, self.result, now)

        self.assertEqual(changes["current_section_index"], 1)
        self.assertEqual(changes["section_started_at"], now)

    def test_complete_section_after_last_is_noop(self):
        self.result["current_section_index"] = 2
        self.assertEqual(scoring.complete_section(self.simulation, self.result, self.start), {})

    def test_section_state(self):
        self.result.update({"current_section_index": 1, "completed_sections": [0]})
        now = self.start + timedelta(minutes=5)

        state = scoring.section_state(self.simulation, self.result, now)

        self.assertEqual([s["status"] for s in state["sections"]], ["completed", "current"])
        self.assertEqual(state["remaining_seconds"], 15 * 60)
        self.assertFalse(state["ready_to_submit"])

    def test_answerable_questions(self):
        self.assertEqual(scoring.answerable_question_ids(self.simulation, self.result), {"q1"})
        self.result["current_section_index"] = 2
        self.assertEqual(scoring.answerable_question_ids(self.simulation, self.result), set())
        self.assertIsNone(scoring.answerable_question_ids({"questions": []}, self.result))

    def test_uncovered_section_questions(self):
        self.simulation["sections"][0]["question_ids"].append("ghost")
        self.assertEqual(scoring.uncovered_section_questions(self.simulation), ["ghost"])


class RankingTest(unittest.TestCase):
    """Leaderboard ordering and statistics."""

    def test_rank_by_score_then_duration_with_ties(self):
        results = [
            {"student_id": "a", "total_score": 10, "duration_seconds": 300},
            {"student_id": "b", "total_score": 12, "duration_seconds": 900},
            {"student_id": "c", "total_score": 10, "duration_seconds": 200},
            {"student_id": "d", "total_score": 5, "duration_seconds": 100},
        ]

        ranked = scoring.rank_results(results)

        self.assertEqual([r["student_id"] for r in ranked], ["b", "c", "a", "d"])
        self.assertEqual([r["rank"] for r in ranked], [1, 2, 2, 4])

    def test_anonymous_name(self):
        self.assertEqual(scoring.anonymous_name(0, 3), "Partecipante Misterioso #3")

    def test_statistics(self):
        sim = {"passing_score": 10}
        results = [
            {"completed_at": datetime(2026, 1, 1), "total_score": 12, "correct_answers": 8, "duration_seconds": 600},
            {"completed_at": datetime(2026, 1, 2), "total_score": 6, "correct_answers": 4, "duration_seconds": 400},
            {"completed_at": None},
        ]

        stats = scoring.simulation_statistics(sim, results)

        self.assertEqual(stats["total_attempts"], 2)
        self.assertEqual(stats["in_progress"], 1)
        self.assertEqual(stats["average_score"], 9)
        self.assertEqual(stats["min_score"], 6)
        self.assertEqual(stats["pass_rate"], 50.0)
