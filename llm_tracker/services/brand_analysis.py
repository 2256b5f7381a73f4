# brand_analysis.py

import os
import re
import json
import logging
from typing import List, Optional, Any, Dict
from dotenv import load_dotenv
from openai import OpenAI

from llm_tracker.config import DEFAULT_LLM_MODEL, LLM_TEMPERATURE, LLM_MAX_TOKENS

load_dotenv()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

logger = logging.getLogger(__name__)

# Greedy: from the first "{" to the last "}" in the answer
JSON_BLOCK_REGEX = re.compile(r"\{[\s\S]*\}")
POSITION_REGEX = re.compile(r"(?:position|rank|#|number)\s*:?\s*(\d+)", re.IGNORECASE)
CONFIDENCE_REGEX = re.compile(r"confidence[:\s]*(\d+)", re.IGNORECASE)

DEFAULT_CONFIDENCE = 50
CONTEXT_BEFORE = 100
CONTEXT_AFTER = 200

SYSTEM_PROMPT = (
    "You are a brand tracking analyst specializing in search result analysis. "
    "Provide detailed, accurate analysis of brand mentions in search results."
)


class BrandAnalysisError(Exception):
    pass


def build_analysis_prompt(keyword: str, brand_name: str, competitors: List[str]) -> str:
    competitors_list = ", ".join(competitors) if competitors else "none specified"

    return f"""You are a brand tracking analyst. Search for information about the keyword "{keyword}" and analyze brand mentions for both the target brand and competitors.

Context:
- Target Brand: {brand_name}
- Competitors: {competitors_list}
- Keyword: {keyword}

Please provide a detailed analysis in JSON format with the following structure:
{{
  "targetBrand": {{
    "name": "{brand_name}",
    "mentioned": boolean,
    "position": number or null,
    "context": "specific context where brand appears"
  }},
  "competitors": [
    {{
      "name": "competitor name",
      "mentioned": boolean,
      "position": number or null,
      "context": "specific context where competitor appears"
    }}
  ],
  "confidence": number (0-100),
  "summary": "detailed analysis summary"
}}

Analyze:
1. Whether {brand_name} is mentioned when searching for "{keyword}"
2. Which competitors from the list appear in search results
3. Position/ranking of each brand (1-10 scale where available)
4. Specific context where each brand appears
5. Your confidence level (0-100) in this analysis

Be specific about positions and provide context for each mention."""


def extract_position(content: str) -> Optional[int]:
    match = POSITION_REGEX.search(content)
    return int(match.group(1)) if match else None


def extract_confidence(content: str) -> int:
    match = CONFIDENCE_REGEX.search(content)
    return int(match.group(1)) if match else DEFAULT_CONFIDENCE


def extract_context(content: str, brand_name: str) -> str:
    """
    Text window around the first case-insensitive occurrence of the brand.
    """
    if not brand_name:
        return ""
    brand_index = content.lower().find(brand_name.lower())
    if brand_index == -1:
        return ""

    start = max(0, brand_index - CONTEXT_BEFORE)
    end = min(len(content), brand_index + CONTEXT_AFTER)
    return content[start:end].strip()


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _load_json_block(content: str) -> Dict[str, Any]:
    match = JSON_BLOCK_REGEX.search(content)
    if not match:
        return {}
    try:
        data = json.loads(match.group(0))
    except ValueError:
        logger.warning("Failed to parse JSON from analysis, falling back to text analysis")
        return {}
    return data if isinstance(data, dict) else {}


def _parse_competitors(raw: Any) -> List[dict]:
    if not isinstance(raw, list):
        return []

    competitors: List[dict] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        competitors.append(
            {
                "name": str(item.get("name") or ""),
                "mentioned": bool(item.get("mentioned")),
                "position": _as_int(item.get("position")),
                "context": item.get("context") or "",
            }
        )
    return competitors


def parse_brand_analysis(content: str, keyword: str, brand_name: str) -> dict:
    """
    Turn a model answer into a mention record.

    JSON fields win when present and not null; everything else is scraped
    from the text. Competitors only come from the JSON.
    """
    parsed = _load_json_block(content)
    target = parsed.get("targetBrand")
    if not isinstance(target, dict):
        target = {}

    mentioned = target.get("mentioned")
    if mentioned is None:
        mentioned = bool(brand_name) and brand_name.lower() in content.lower()

    position = _as_int(target.get("position"))
    if position is None:
        position = extract_position(content)

    confidence = _as_int(parsed.get("confidence"))
    if confidence is None:
        confidence = extract_confidence(content)

    context = target.get("context")
    if context is None:
        context = extract_context(content, brand_name)

    return {
        "keyword": keyword,
        "brand_mentioned": bool(mentioned),
        "position": position,
        "confidence": confidence,
        "context": str(context),
        "competitors": _parse_competitors(parsed.get("competitors")),
    }


def analyze_brand_mention(
    keyword: str,
    brand_name: str,
    competitors: List[str],
    model: Optional[str] = None,
    api_key: Optional[str] = None,
) -> dict:
    """
    Ask the model about one keyword and parse its answer.

    Returns the mention record plus `raw_response` (the full answer) and
    `model`.
    """
    key = api_key or OPENAI_API_KEY
    if not key:
        raise RuntimeError("OPENAI_API_KEY not set in environment")

    client = OpenAI(api_key=key)
    model_to_use = model or DEFAULT_LLM_MODEL

    try:
        completion = client.chat.completions.create(
            model=model_to_use,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_analysis_prompt(keyword, brand_name, competitors)},
            ],
            temperature=LLM_TEMPERATURE,
            top_p=1.0,
            frequency_penalty=0.0,
            presence_penalty=0.0,
            max_tokens=LLM_MAX_TOKENS,
        )
    except Exception as e:
        logger.error("OpenAI call failed for keyword %r: %s", keyword, e)
        raise BrandAnalysisError(f"Failed to analyze brand mention: {e}") from e

    content = ""
    if completion.choices:
        content = completion.choices[0].message.content or ""

    result = parse_brand_analysis(content, keyword, brand_name)
    result["raw_response"] = content
    result["model"] = model_to_use
    return result
