"""Extract the compact quote fields from an email with an OpenAI chat model."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import openai
from pydantic import ValidationError

from ..models import ExtractedQuote

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

PROMPT_TEMPLATE = """\
You are an extractor. Given the raw email below, return exactly one valid JSON object
(no explanation, no markdown) that matches the schema and rules below.

Schema:
{{
  "rfq_no": "",
  "title": "",
  "prod": "",
  "width": null,
  "height": null,
  "kinds": [
    {{ "kind": "", "count": 0 }}
  ],
  "print": "",
  "stock": "",
  "finish": "",
  "packing": "",
  "delivery": "",
  "quantity": 0
}}

IMPORTANT RULES:
1. Output must contain EXACTLY this JSON structure. Use double quotes only.
2. All numeric values must be real numbers (not strings).
3. If a field cannot be found, return:
   - "" for text fields
   - null for width / height
   - [] for kinds
   - 0 for quantity
4. KINDS EXTRACTION RULES (extract ALL kinds):
   A kind is any standalone token appearing on its own line, typically in a table or list
   between the SIZE and FINISH/PRINT sections, that is not one of the known headers:
   RFQ, TITLE, PROD, SIZE, PRINT, STOCK, FINISH, PACKING, DELIVERY, Quantity.
   A standalone token is a line holding exactly one word or code (letters, digits, hyphens,
   underscores), or a product/SKU code in a table row. Examples: 623869010C01, kind1,
   KIND_ABC, SKU-77, A0HEADER.
   If a table lists many codes, extract every one of them; there may be 10, 15, 17 or more.
5. COUNT EXTRACTION RULES:
   - If the kind line includes a count like "CODE x390" or "CODE ×390", extract that number.
   - If a kind line has no count, set "count": 0.
   - If there is exactly one kind AND the email contains a total Quantity (like "870"),
     you may set that kind's count equal to the total Quantity.
6. The output must be valid JSON with no additional fields, no comments and no extra text.

INPUT EMAIL:
<<<
{raw_text}
>>>"""


class ExtractionError(RuntimeError):
    """Raised when the model call fails or its output cannot be used."""


def build_prompt(raw_text: str) -> str:
    return PROMPT_TEMPLATE.format(raw_text=raw_text)


def parse_model_text_to_json(text: str) -> Dict[str, Any]:
    """Return the JSON object spanning the first ``{`` to the last ``}`` of ``text``."""
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last < first:
        raise ExtractionError("No JSON found in model response.")
    snippet = text[first:last + 1]
    try:
        parsed = json.loads(snippet)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Invalid JSON from model: {exc}\nSnippet: {snippet[:500]}") from exc
    if not isinstance(parsed, dict):
        raise ExtractionError("Model response is not a JSON object.")
    return parsed


class QuoteExtractor:
    """Ask the model for the compact fields and validate them."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        client: Any = None,
    ):
        if client is None:
            if not api_key:
                raise ExtractionError("Missing OpenAI API key")
            client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.client = client
        self.model = model

    async def _complete(self, raw_text: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": build_prompt(raw_text)}],
                temperature=0,
                max_tokens=2000,
            )
        except openai.OpenAIError as exc:
            raise ExtractionError(f"OpenAI error: {exc}") from exc
        choice = response.choices[0] if response.choices else None
        logger.info(
            "OpenAI finish_reason: %s, usage: %s",
            getattr(choice, "finish_reason", None),
            getattr(response, "usage", None),
        )
        content = choice.message.content if choice is not None else None
        return content or ""

    async def extract(self, raw_text: str) -> ExtractedQuote:
        """Run the model on ``raw_text`` and return the validated fields."""
        text = await self._complete(raw_text)
        logger.debug("OpenAI output: %s", text)
        try:
            data = parse_model_text_to_json(text)
        except ExtractionError as exc:
            raise ExtractionError(
                f"Failed to parse extractor JSON from model: {exc}\nModel raw output: {text[:1000]}"
            ) from exc
        try:
            return ExtractedQuote.model_validate(data)
        except ValidationError as exc:
            raise ExtractionError(f"Extractor JSON does not match the schema: {exc}") from exc
