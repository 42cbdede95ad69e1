"""Vision-based extraction of handwritten answers using pydantic-ai."""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic_ai import BinaryContent

from paperscore.libs.config_loader import ConfigType, get_config
from paperscore.libs.llm import create_agent
from .errors import AdapterError
from .models import PageExtraction, Question

LOG = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You are analyzing scanned test papers. Extract all text from each image, "
    "including both printed questions and handwritten answers. Preserve the "
    "student's exact wording as much as possible. If text is unclear, make your "
    "best interpretation and note the uncertainty in the answer text."
)


class ExtractionService(Protocol):
    """Anything that can read question answers from page images."""

    async def extract(self, images: List[str],
                      expected_questions: Optional[List[Question]] = None) -> PageExtraction:
        ...


def create_extraction_agent(configs: ConfigType,
                            model: Optional[str] = None,
                            settings_dict: Optional[Dict[str, Any]] = None) -> Any:
    """
    Create a pydantic-ai Agent that returns a PageExtraction.

    Args:
        configs: Configuration dictionary (required)
        model: Model to use (overrides ``extraction.model``)
        settings_dict: Pydantic AI settings dict (overrides config values)

    Returns:
        Configured Agent for extraction
    """
    model = model or get_config("extraction.model", configs, default=None)
    settings_dict = settings_dict or get_config("extraction.pydantic_ai_settings", configs, default=None)
    return create_agent(
        configs=configs,
        model=model,
        settings_dict=settings_dict,
        system_prompt=EXTRACTION_SYSTEM_PROMPT,
        output_type=PageExtraction,
    )


def load_image(path: str) -> BinaryContent:
    """Read an image file into a pydantic-ai binary content part."""
    media_type, _ = mimetypes.guess_type(path)
    if media_type is None or not media_type.startswith('image/'):
        media_type = 'image/jpeg'
    return BinaryContent(data=Path(path).read_bytes(), media_type=media_type)


class VisionExtractor:
    """Extract per-question answers from test paper images."""

    def __init__(self, configs: ConfigType,
                 model: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        self.configs = configs
        self.model_name = model
        self.agent = create_extraction_agent(configs, model=model, settings_dict=settings)

    async def extract(self, images: List[str],
                      expected_questions: Optional[List[Question]] = None) -> PageExtraction:
        """
        Read answers from one or more page images.

        Args:
            images: Paths of the page images, in page order
            expected_questions: Rubric questions, used as a hint for numbering

        Returns:
            PageExtraction with raw text and per-question answers

        Raises:
            AdapterError: If the images cannot be read or the model output is unusable
        """
        prompt = self._build_prompt(expected_questions)
        try:
            content: List[Any] = [prompt]
            content.extend(load_image(path) for path in images)
            result = await self.agent.run(content)
        except Exception as e:
            raise AdapterError(f"Extraction failed for {', '.join(images)}: {e}", e) from e

        output = result.output
        if not isinstance(output, PageExtraction):
            raise AdapterError(f"Extraction returned unexpected output type {type(output).__name__}")
        LOG.debug("Extracted %d answers from %s", len(output.questions), images)
        return output

    def _build_prompt(self, expected_questions: Optional[List[Question]] = None) -> str:
        """Build the extraction prompt, listing the expected questions when known."""
        expected = ""
        if expected_questions:
            listing = "\n".join(
                f"- Question {q.question_number} ({q.max_points} points): {q.question_text}"
                for q in expected_questions
            )
            expected = f"""
EXPECTED QUESTIONS:
The paper should contain answers to these questions. Use these numbers.
{listing}
"""

        return f"""Extract the student's answers from the attached test paper image(s).

Your task:
1. Identify each question number and the corresponding student answer
2. Extract the complete text as written by the student
3. If text is unclear, make your best interpretation and note uncertainty
{expected}
Important:
- Include ALL questions found, even if the answer is blank (use an empty string)
- Preserve the student's exact wording as much as possible
- If you cannot determine a question number, use -1 and include the text
- Put the complete raw text of the page in raw_text"""
