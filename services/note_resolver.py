# WORKFLOW: Knowledge-base note resolver backed by an LLM (optional collaborator).
# Used by: Formula source selector (note-referencing rate text only)
# Functions:
# 1. resolve_note_reference() - Rate text referencing a note -> {formula, confidence} or None
# 2. create_note_resolver() - Build a resolver when the knowledge base is enabled
#
# Resolution flow: Rate text -> LLM prompt -> JSON response -> Formula validation -> Result
# Transport failures raise ExternalLookupFailure; unusable answers return None.

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import httpx
import ollama

from core.config import settings
from core.exceptions import ExternalLookupFailure
from etl.duty_parser import validate_formula

logger = logging.getLogger(__name__)

SHIPMENT_VARIABLES = {"value", "weight", "quantity"}

PROMPT_TEMPLATE = """
You convert US tariff rate text that references a legal note into an arithmetic duty formula.
Allowed variables: value (declared value in USD), weight (kg), quantity (units).
Allowed operators: + - * / and parentheses.
Return ONLY a JSON object with keys: formula (string or null), confidence (number between 0 and 1).

HTS code: {hts_number}
Rate column: {column}
Schedule year: {year}
Rate text: {rate_text}
JSON:
"""


class OllamaNoteResolver:
    """Resolves note-referencing rate text into a formula using an Ollama model."""

    def __init__(self, client: Optional[ollama.Client] = None, model: Optional[str] = None):
        self.client = client or ollama.Client(host=settings.ollama_url, timeout=settings.llm_timeout_seconds)
        self.model = model or settings.llm_model

    async def resolve_note_reference(
        self,
        hts_number: str,
        rate_text: str,
        column: str,
        year: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        prompt = PROMPT_TEMPLATE.format(
            hts_number=hts_number,
            column=column,
            year=year or "unknown",
            rate_text=rate_text,
        )

        def _call_llm() -> Dict[str, Any]:
            return self.client.generate(model=self.model, prompt=prompt)

        try:
            response = await asyncio.to_thread(_call_llm)
        except (httpx.HTTPError, ollama.ResponseError, ConnectionError) as e:
            logger.error(f"Knowledge base call failed for {hts_number}: {e}")
            raise ExternalLookupFailure(f"Knowledge base unavailable: {e}") from e

        try:
            data = json.loads(response.get("response", "{}"))
        except (TypeError, ValueError) as e:
            logger.warning(f"Knowledge base returned non-JSON output for {hts_number}: {e}")
            return None

        formula = data.get("formula") if isinstance(data, dict) else None
        if not isinstance(formula, str) or not formula.strip():
            return None

        formula = formula.strip()
        validation = validate_formula(formula)
        if not validation["valid"]:
            logger.warning(f"Rejected knowledge base formula for {hts_number}: {validation['error']}")
            return None
        unknown = set(re.findall(r'[a-z_]+', formula.lower())) - SHIPMENT_VARIABLES
        if unknown:
            logger.warning(f"Rejected knowledge base formula for {hts_number}: unknown names {sorted(unknown)}")
            return None

        confidence = data.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = None
        elif not 0 <= confidence <= 1:
            confidence = None

        return {"formula": formula, "confidence": confidence}


def create_note_resolver() -> Optional[OllamaNoteResolver]:
    """Factory function; returns None when the knowledge base is disabled."""
    if not settings.knowledge_base_enabled:
        return None
    return OllamaNoteResolver()
