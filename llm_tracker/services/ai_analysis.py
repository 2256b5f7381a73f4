# llm_tracker/services/ai_analysis.py

import logging
from typing import Optional

from openai import OpenAI

from llm_tracker.config import DEFAULT_AI_ANALYSIS_MODEL, AI_ANALYSIS_MAX_TOKENS
from llm_tracker.services import brand_analysis

logger = logging.getLogger(__name__)

SYSTEM_PROMPTS = {
    "analysis": (
        "You are an AI search visibility analyst. "
        "Analyse the brand tracking data you are given and explain, in clear Markdown, "
        "where the brand is winning, where competitors are ahead, and why."
    ),
    "suggestions": (
        "You are an AI search visibility consultant. "
        "Give concrete, prioritised suggestions (as a Markdown checklist) that would help "
        "the brand get mentioned more often in AI assistant answers."
    ),
}


def run_ai_analysis(
    prompt: str,
    analysis_type: str = "analysis",
    max_tokens: Optional[int] = None,
    model: Optional[str] = None,
) -> str:
    """
    Free-form analysis/suggestions for the dashboard. Returns the answer text
    (possibly empty).
    """
    if analysis_type not in SYSTEM_PROMPTS:
        raise ValueError(f"Unknown analysis type: {analysis_type}")

    if not brand_analysis.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY not set in environment")

    client = OpenAI(api_key=brand_analysis.OPENAI_API_KEY)
    model_to_use = model or DEFAULT_AI_ANALYSIS_MODEL

    completion = client.chat.completions.create(
        model=model_to_use,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPTS[analysis_type]},
            {"role": "user", "content": prompt},
        ],
        temperature=0.4,
        max_tokens=max_tokens or AI_ANALYSIS_MAX_TOKENS,
    )

    if not completion.choices:
        return ""
    return completion.choices[0].message.content or ""
