"""Tests for the YAML rubric and submission stores."""

import pytest
import yaml

from paperscore.tools.exam_scoring.errors import (
    ConcurrentModificationError, ConsistencyError, NotFoundError
)
from paperscore.tools.exam_scoring.models import (
    Confidence, Question, QuestionScore, SubmissionStatus
)
from paperscore.tools.exam_scoring.store import RubricStore, SubmissionStore, open_stores


def test_create_and_get_rubric(rubric_store, rubric):
    loaded = rubric_store.get(rubric.id)
    assert loaded.name == "Biology Quiz"
    assert loaded.version == "1.0"
    assert loaded.total_points == 15
    assert [q.question_number for q in loaded.questions] == [1, 2]


def test_rubric_is_stored_as_yaml(rubric_store, rubric, data_dir):
    path = data_dir / "rubrics" / f"{rubric.id}.yaml"
    data = yaml.safe_load(path.read_text())
    assert data['name'] == "Biology Quiz"
    assert data['questions'][0]['max_points'] == 5


def test_create_rubric_without_questions_fails(rubric_store, guidelines):
    with pytest.raises(ConsistencyError):
        rubric_store.create("Empty", [], guidelines)


def test_update_rubric_recomputes_total(rubric_store, rubric):
    """Test that total points follow updated questions."""
    extra = Question(question_number=3, question_text="Q3", max_points=5, evaluation_criteria="c")
    updated = rubric_store.update(rubric.id, questions=rubric.questions + [extra], version="1.1")
    assert updated.total_points == 20
    assert updated.version == "1.1"
    assert updated.updated_at >= rubric.updated_at
    assert rubric_store.get(rubric.id).total_points == 20


def test_update_rubric_rejects_unknown_fields(rubric_store, rubric):
    with pytest.raises(ConsistencyError, match="total_points"):
        rubric_store.update(rubric.id, total_points=100)


def test_list_and_delete_rubrics(rubric_store, rubric, questions, guidelines):
    second = rubric_store.create("Chemistry Quiz", questions, guidelines)
    assert [r.id for r in rubric_store.list()] == [second.id, rubric.id]

    rubric_store.delete(rubric.id)
    assert [r.id for r in rubric_store.list()] == [second.id]
    with pytest.raises(NotFoundError, match="Rubric .* not found"):
        rubric_store.get(rubric.id)
    with pytest.raises(NotFoundError):
        rubric_store.delete(rubric.id)


def test_missing_submission(submission_store):
    with pytest.raises(NotFoundError) as exc_info:
        submission_store.get("nope")
    assert str(exc_info.value) == "Submission nope not found"


@pytest.mark.parametrize("bad_id", ["../escape", "a/b", ".hidden", ""])
def test_rejects_path_like_ids(submission_store, bad_id):
    with pytest.raises(NotFoundError):
        submission_store.get(bad_id)


def test_create_submission(submission_store, rubric):
    submission = submission_store.create(rubric.id, ["p1.jpg", "p2.jpg"], candidate_name="Ada")
    assert submission.revision == 1

    loaded = submission_store.get(submission.id)
    assert loaded.status == SubmissionStatus.PENDING
    assert loaded.original_images == ["p1.jpg", "p2.jpg"]
    assert loaded.candidate_name == "Ada"


def test_create_submission_requires_images(submission_store, rubric):
    with pytest.raises(ConsistencyError):
        submission_store.create(rubric.id, [])


def test_stale_save_is_rejected(submission_store, rubric):
    """Test that a write based on an outdated read does not clobber newer state."""
    created = submission_store.create(rubric.id, ["p1.jpg"])
    first = submission_store.get(created.id)
    second = submission_store.get(created.id)

    first.candidate_name = "First"
    submission_store.save(first)

    second.candidate_name = "Second"
    with pytest.raises(ConcurrentModificationError):
        submission_store.save(second)
    assert submission_store.get(created.id).candidate_name == "First"


def test_save_after_delete_is_rejected(submission_store, rubric, data_dir):
    created = submission_store.create(rubric.id, ["p1.jpg"])
    (data_dir / "submissions" / f"{created.id}.yaml").unlink()
    with pytest.raises(NotFoundError):
        submission_store.save(created)


def test_save_rejects_inconsistent_scores(submission_store, rubric):
    """Test that invariants are re-checked at persistence time."""
    submission = submission_store.create(rubric.id, ["p1.jpg"])
    score = QuestionScore(question_number=1, points=3, max_points=5, feedback="ok",
                          confidence=Confidence.HIGH)
    submission.scores = [score]
    # Mutating a nested model skips validation until the document is saved
    score.points = 8
    with pytest.raises(ConsistencyError):
        submission_store.save(submission)


def test_list_submissions_filters(submission_store, rubric):
    first = submission_store.create(rubric.id, ["a.jpg"])
    second = submission_store.create(rubric.id, ["b.jpg"])
    other = submission_store.create("other-rubric", ["c.jpg"])

    second.status = SubmissionStatus.ERROR
    submission_store.save(second)

    assert {s.id for s in submission_store.list(rubric_id=rubric.id)} == {first.id, second.id}
    assert [s.id for s in submission_store.list(status=SubmissionStatus.ERROR)] == [second.id]
    assert [s.id for s in submission_store.list(status="pending", rubric_id="other-rubric")] == [other.id]


def test_open_stores_uses_config(tmp_path):
    configs = {'storage': {'data_dir': str(tmp_path / "store")}}
    rubrics, submissions = open_stores(configs)
    assert isinstance(rubrics, RubricStore)
    assert isinstance(submissions, SubmissionStore)
    assert (tmp_path / "store" / "rubrics").is_dir()
    assert (tmp_path / "store" / "submissions").is_dir()
