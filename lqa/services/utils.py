"""Utility functions for parsing LLM responses and text normalization."""
import json
import logging
import re
import unicodedata

import json_repair

logger = logging.getLogger(__name__)


def normalize_for_match(text: str | None) -> str:
    """NFKC, trim, collapse whitespace. Used for cross-file grouping and parity matching."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", unicodedata.normalize("NFKC", text)).strip()


def _preprocess_response(response: str) -> str:
    """Strip markdown, preamble, and return content from first '{'."""
    response = (response or "").strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    response = response.strip()
    idx = response.find("{")
    if idx >= 0:
        response = response[idx:]
    return response


def parse_json_response(response: str) -> dict:
    """Parse a JSON object from an LLM response, handling markdown, preamble, and trailing text.

    Tries: 1) strict parse, 2) truncate at last '}', 3) json_repair.
    Raises json.JSONDecodeError (or ValueError) when nothing usable is found.
    """
    preprocessed = _preprocess_response(response)
    first_error = None

    try:
        obj, _ = json.JSONDecoder().raw_decode(preprocessed)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Failed to parse JSON: %s", e)
        logger.debug("Response was: %s", (response or "")[:500])

    # Try to recover partial JSON by truncating at last complete '}'
    last_brace = preprocessed.rfind("}")
    if last_brace > 0:
        partial = preprocessed[: last_brace + 1]
        if partial.count("{") == partial.count("}"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                if isinstance(obj, dict):
                    logger.warning("Recovered partial JSON by truncating at last complete brace")
                    return obj
            except json.JSONDecodeError:
                pass

    repaired = json_repair.loads(preprocessed) if preprocessed else None
    if isinstance(repaired, dict) and repaired:
        logger.warning("Recovered JSON using json_repair after strict parse failed")
        return repaired

    if first_error is not None:
        raise first_error
    raise ValueError("Failed to parse JSON object from response")
