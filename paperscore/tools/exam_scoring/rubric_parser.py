"""Parser for building rubric schemas from markdown or YAML files."""

import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import Question, RubricGuidelines, RubricSchema

DEFAULT_GUIDELINES = {
    'full_credit': "The answer covers every point of the evaluation criteria correctly.",
    'partial_credit': "The answer is partially correct or misses some key points.",
    'no_credit': "The answer is blank, irrelevant or entirely incorrect.",
}

_HEADER_PATTERN = re.compile(
    r'^#{2,3}\s+(?:question\s+|q)?(\d+)[.:)]?\s*(.*?)\s*[\(\[](\d+(?:\.\d+)?)\s*(?:points?|pts?|marks?)[\)\]]\s*$',
    re.IGNORECASE,
)
_GUIDELINE_PATTERN = re.compile(
    r'^\s*[-*]?\s*\**\s*(full|partial|no)[\s-]+credit\s*\**\s*:\s*\**\s*(.+)$',
    re.IGNORECASE,
)
_LABELLED_LINE = re.compile(
    r'^\s*[-*]?\s*\**(question|criteria|evaluation criteria|sample answer|expected answer)\**\s*:\s*(.*)$',
    re.IGNORECASE,
)


class RubricParser:
    """Parse rubric files into RubricSchema objects."""

    def parse_file(self, rubric_path: Path, name: Optional[str] = None) -> RubricSchema:
        """Parse a YAML or markdown rubric file."""
        rubric_path = Path(rubric_path)
        try:
            content = rubric_path.read_text(encoding='utf-8')
        except Exception as e:
            raise ValueError(f"Could not read rubric file: {e}")

        if rubric_path.suffix.lower() in ('.yaml', '.yml'):
            return self.parse_yaml(content)
        return self.parse(content, name=name or rubric_path.stem)

    def parse_yaml(self, content: str) -> RubricSchema:
        data = yaml.safe_load(content)
        if not isinstance(data, dict):
            raise ValueError("YAML rubric must be a mapping")
        data.setdefault('rubric_guidelines', DEFAULT_GUIDELINES)
        try:
            return RubricSchema.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid rubric: {e}")

    def parse(self, content: str, name: Optional[str] = None) -> RubricSchema:
        """
        Parse markdown content into a rubric.

        Supports two question formats:
        1. Tables with | # | Question | Points | Criteria | Sample Answer |
        2. Headers with ## Question N (X points) followed by the criteria

        Credit guidelines come from lines like ``- Full credit: ...``.
        """
        questions = self._parse_table_format(content) or self._parse_header_format(content)
        if not questions:
            raise ValueError(
                "Could not parse rubric. Ensure it contains a table with Question|Points|Criteria "
                "columns or '## Question N (X points)' headers"
            )

        title = self._find_title(content) or name or "Untitled rubric"
        version_match = re.search(r'^\s*version\s*:\s*(\S+)', content, re.IGNORECASE | re.MULTILINE)

        try:
            return RubricSchema(
                name=title,
                version=version_match.group(1) if version_match else "1.0",
                questions=questions,
                rubric_guidelines=RubricGuidelines(**self._parse_guidelines(content)),
            )
        except ValidationError as e:
            raise ValueError(f"Invalid rubric: {e}")

    @staticmethod
    def _find_title(content: str) -> Optional[str]:
        for line in content.split('\n'):
            match = re.match(r'^#\s+(.+)$', line.strip())
            if match:
                return match.group(1).strip()
        return None

    def _parse_guidelines(self, content: str) -> Dict[str, str]:
        guidelines = dict(DEFAULT_GUIDELINES)
        for line in content.split('\n'):
            match = _GUIDELINE_PATTERN.match(line)
            if match:
                key = f"{match.group(1).lower()}_credit"
                guidelines[key] = match.group(2).replace('**', '').strip()
        return guidelines

    @staticmethod
    def _classify_header(part: str) -> Optional[str]:
        part_lower = part.lower().strip()
        if any(keyword in part_lower for keyword in ['sample', 'expected', 'model answer']):
            return 'sample'
        if any(keyword in part_lower for keyword in ['text', 'prompt']):
            return 'text'
        if part_lower in ['#', 'no', 'no.', 'q', 'num', 'number', 'question #'] or 'number' in part_lower:
            return 'number'
        if any(keyword in part_lower for keyword in ['point', 'score', 'max', 'mark']):
            return 'points'
        if any(keyword in part_lower for keyword in ['criteria', 'criterion', 'description', 'requirement', 'evaluation']):
            return 'criteria'
        if 'question' in part_lower:
            return 'text'
        return None

    def _parse_table_format(self, content: str) -> List[Question]:
        """Parse table format rubrics."""
        questions = []
        in_table = False
        header_indices: Dict[str, int] = {}

        for line in content.split('\n'):
            line = line.strip()

            # Skip empty lines and separators
            if not line or line.startswith('|-') or all(c in '|-: ' for c in line):
                continue

            if '|' not in line:
                if in_table:
                    break
                continue

            parts = [p.strip() for p in line.strip('|').split('|')]

            # Detect header row
            if not in_table:
                header_indices = {}
                for i, part in enumerate(parts):
                    kind = self._classify_header(part)
                    if kind and kind not in header_indices:
                        header_indices[kind] = i
                if 'points' in header_indices and ('text' in header_indices or 'criteria' in header_indices):
                    in_table = True
                continue

            if len(parts) <= header_indices['points']:
                continue
            points_match = re.search(r'(\d+(?:\.\d+)?)', parts[header_indices['points']])
            if not points_match:
                continue

            def cell(kind: str) -> str:
                index = header_indices.get(kind)
                if index is None or index >= len(parts):
                    return ""
                return parts[index].replace('**', '').strip()

            # Skip total rows
            label = cell('text') or cell('number')
            if label.lower() in ['total', 'sum', 'max', 'maximum']:
                continue

            number_match = re.search(r'\d+', cell('number'))
            number = int(number_match.group()) if number_match else len(questions) + 1
            question_text = cell('text') or f"Question {number}"
            criteria_text = cell('criteria') or f"Evaluation of question {number}"

            questions.append(Question(
                question_number=number,
                question_text=question_text,
                max_points=float(points_match.group(1)),
                evaluation_criteria=criteria_text,
                sample_answer=cell('sample') or None,
            ))

        return questions

    def _parse_header_format(self, content: str) -> List[Question]:
        """Parse header-based format rubrics."""
        questions = []
        lines = content.split('\n')

        for i, line in enumerate(lines):
            match = _HEADER_PATTERN.match(line.strip())
            if not match:
                continue

            number = int(match.group(1))
            question_text = match.group(2).strip(' -:')
            points = float(match.group(3))

            criteria_lines: List[str] = []
            sample_answer = None
            for next_line in lines[i + 1:]:
                stripped = next_line.strip()
                if stripped.startswith('#'):
                    break
                if not stripped or _GUIDELINE_PATTERN.match(stripped):
                    continue
                labelled = _LABELLED_LINE.match(stripped)
                if labelled:
                    label, value = labelled.group(1).lower(), labelled.group(2).strip()
                    if label == 'question':
                        question_text = question_text or value
                    elif label in ('sample answer', 'expected answer'):
                        sample_answer = value
                    else:
                        criteria_lines.append(value)
                else:
                    criteria_lines.append(stripped)

            questions.append(Question(
                question_number=number,
                question_text=question_text or f"Question {number}",
                max_points=points,
                evaluation_criteria=" ".join(criteria_lines) or f"Evaluation of question {number}",
                sample_answer=sample_answer,
            ))

        return questions
