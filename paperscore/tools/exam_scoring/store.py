"""YAML-backed document stores for rubrics and submissions.

Each document is one YAML file under ``<data_dir>/<collection>/<id>.yaml``.
Submission saves are optimistic: a save only succeeds if the stored revision
still matches the revision the caller read.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from paperscore.libs.config_loader import ConfigType, get_config
from .errors import ConcurrentModificationError, ConsistencyError, NotFoundError
from .models import (
    Question, RubricGuidelines, RubricSchema, Submission, SubmissionStatus, utcnow
)

LOG = logging.getLogger(__name__)


class YamlCollection:
    """A directory of YAML documents keyed by id."""

    def __init__(self, root: Path, name: str):
        self.path = Path(root) / name
        self.path.mkdir(parents=True, exist_ok=True)

    def _file(self, doc_id: str) -> Path:
        if not doc_id or '/' in doc_id or '\\' in doc_id or doc_id.startswith('.'):
            raise NotFoundError(self.path.name, doc_id)
        return self.path / f"{doc_id}.yaml"

    def read(self, doc_id: str) -> Optional[Dict[str, Any]]:
        path = self._file(doc_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)

    def write(self, doc_id: str, data: Dict[str, Any]) -> None:
        path = self._file(doc_id)
        # Write to a temp file first so readers never see a half-written document
        fd, tmp_name = tempfile.mkstemp(dir=self.path, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def remove(self, doc_id: str) -> bool:
        path = self._file(doc_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def ids(self) -> List[str]:
        return sorted(p.stem for p in self.path.glob('*.yaml'))


class RubricStore:
    """Create, read, update and delete rubric schemas."""

    def __init__(self, data_dir: Path):
        self.collection = YamlCollection(data_dir, 'rubrics')

    def get(self, rubric_id: str) -> RubricSchema:
        data = self.collection.read(rubric_id)
        if data is None:
            raise NotFoundError("Rubric", rubric_id)
        return RubricSchema.model_validate(data)

    def list(self) -> List[RubricSchema]:
        """All rubrics, most recently updated first."""
        rubrics = []
        for rubric_id in self.collection.ids():
            data = self.collection.read(rubric_id)
            if data is not None:
                rubrics.append(RubricSchema.model_validate(data))
        rubrics.sort(key=lambda r: r.updated_at, reverse=True)
        return rubrics

    def save(self, rubric: RubricSchema) -> RubricSchema:
        try:
            rubric = RubricSchema.model_validate(rubric.model_dump())
        except ValidationError as e:
            raise ConsistencyError(f"Invalid rubric {rubric.id}: {e}") from e
        self.collection.write(rubric.id, rubric.model_dump(mode='json'))
        LOG.debug("Saved rubric %s (%s v%s)", rubric.id, rubric.name, rubric.version)
        return rubric

    def create(self, name: str, questions: List[Question], rubric_guidelines: RubricGuidelines,
               version: str = "1.0", description: Optional[str] = None) -> RubricSchema:
        try:
            rubric = RubricSchema(
                name=name,
                version=version or "1.0",
                description=description,
                questions=questions,
                rubric_guidelines=rubric_guidelines,
            )
        except ValidationError as e:
            raise ConsistencyError(f"Invalid rubric: {e}") from e
        LOG.info("Created rubric %s with %d questions (%s points)",
                 rubric.id, len(rubric.questions), rubric.total_points)
        return self.save(rubric)

    def update(self, rubric_id: str, **fields: Any) -> RubricSchema:
        """
        Update rubric fields.

        Only ``name``, ``version``, ``description``, ``questions`` and
        ``rubric_guidelines`` can be changed; ``total_points`` always follows
        the questions.
        """
        allowed = {'name', 'version', 'description', 'questions', 'rubric_guidelines'}
        unknown = set(fields) - allowed
        if unknown:
            raise ConsistencyError(f"Cannot update rubric fields: {', '.join(sorted(unknown))}")

        rubric = self.get(rubric_id)
        data = rubric.model_dump()
        data.update({k: v for k, v in fields.items() if v is not None or k == 'description'})
        data['updated_at'] = utcnow()
        try:
            updated = RubricSchema.model_validate(data)
        except ValidationError as e:
            raise ConsistencyError(f"Invalid rubric update for {rubric_id}: {e}") from e
        return self.save(updated)

    def delete(self, rubric_id: str) -> None:
        if not self.collection.remove(rubric_id):
            raise NotFoundError("Rubric", rubric_id)
        LOG.info("Deleted rubric %s", rubric_id)


class SubmissionStore:
    """Read and write submissions with optimistic revision checks."""

    def __init__(self, data_dir: Path):
        self.collection = YamlCollection(data_dir, 'submissions')

    def get(self, submission_id: str) -> Submission:
        data = self.collection.read(submission_id)
        if data is None:
            raise NotFoundError("Submission", submission_id)
        return Submission.model_validate(data)

    def list(self, rubric_id: Optional[str] = None,
             status: Optional[SubmissionStatus] = None) -> List[Submission]:
        """Submissions matching the filters, newest first."""
        submissions = []
        for submission_id in self.collection.ids():
            data = self.collection.read(submission_id)
            if data is None:
                continue
            submission = Submission.model_validate(data)
            if rubric_id and submission.rubric_id != rubric_id:
                continue
            if status and submission.status != SubmissionStatus(status):
                continue
            submissions.append(submission)
        submissions.sort(key=lambda s: s.created_at, reverse=True)
        return submissions

    def create(self, rubric_id: str, images: List[str], candidate_name: Optional[str] = None,
               rubric_snapshot: Optional[RubricSchema] = None) -> Submission:
        if not images:
            raise ConsistencyError("At least one image is required")
        submission = Submission(
            rubric_id=rubric_id,
            candidate_name=candidate_name or None,
            original_images=[str(p) for p in images],
            rubric_snapshot=rubric_snapshot,
        )
        self.save(submission)
        LOG.info("Created submission %s for rubric %s with %d image(s)",
                 submission.id, rubric_id, len(images))
        return submission

    def save(self, submission: Submission) -> Submission:
        """
        Validate and persist a submission, bumping its revision.

        Raises:
            ConsistencyError: If the submission fails model validation
            ConcurrentModificationError: If the stored revision changed since it was read
            NotFoundError: If a previously stored submission was deleted
        """
        try:
            Submission.model_validate(submission.model_dump())
        except ValidationError as e:
            raise ConsistencyError(f"Invalid submission {submission.id}: {e}") from e

        stored_revision = self._stored_revision(submission.id)
        if stored_revision is None and submission.revision > 0:
            raise NotFoundError("Submission", submission.id)
        if stored_revision is not None and stored_revision != submission.revision:
            raise ConcurrentModificationError(submission.id, submission.revision, stored_revision)

        submission.revision += 1
        submission.updated_at = utcnow()
        self.collection.write(submission.id, submission.model_dump(mode='json'))
        return submission

    def _stored_revision(self, submission_id: str) -> Optional[int]:
        data = self.collection.read(submission_id)
        if data is None:
            return None
        return int(data.get('revision', 0))


def open_stores(configs: ConfigType, data_dir: Optional[Path] = None) -> Tuple[RubricStore, SubmissionStore]:
    """Open both stores under ``storage.data_dir`` (or ``data_dir``)."""
    root = Path(data_dir or get_config("storage.data_dir", configs, default="data"))
    return RubricStore(root), SubmissionStore(root)
