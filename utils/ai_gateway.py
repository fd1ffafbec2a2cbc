"""AI assistant for officials: complaint analysis, note drafting and status suggestions.

Requests go to an OpenAI-compatible chat-completions gateway by default, or to
Gemini directly when ``AI_PROVIDER=gemini``.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict

import requests
from flask import current_app
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from models import COMPLAINT_STATUSES, Complaint
from utils.ai_markdown_formatter import markdown_to_html

GEMINI_PROVIDER = "gemini"
FALLBACK_STATUS = "in_review"

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
PAYMENT_REQUIRED_MESSAGE = "Payment required. Please add credits to continue."


class AIGatewayError(Exception):
    """Raised when the AI provider cannot return a usable completion."""

    status_code = 502


class AIRateLimitError(AIGatewayError):
    status_code = 429


class AIPaymentRequiredError(AIGatewayError):
    status_code = 402


ANALYSIS_SYSTEM_PROMPT = (
    "You are an AI assistant analyzing corruption complaints for a government anti-corruption system. "
    "Analyze the complaint and provide:\n"
    "1. Urgency score (1-10, where 10 is most urgent)\n"
    "2. Sentiment analysis (positive, neutral, negative, critical)\n"
    "3. Key issues identified (list of main concerns)\n"
    "4. Recommended actions (specific steps to take)\n"
    "5. Similar patterns (if this looks like a common issue)\n"
    "6. Risk assessment (low, medium, high, critical)\n\n"
    "Be objective, thorough, and focus on actionable insights."
)

DRAFT_NOTE_SYSTEM_PROMPT = (
    "You are a government official writing professional, empathetic notes to citizens about their corruption complaints. "
    "Your notes should be professional yet approachable, clear about next steps, empathetic to their concerns, "
    "specific about timelines when possible and encouraging of transparency."
)

SUGGEST_STATUS_SYSTEM_PROMPT = (
    "You are an AI assistant helping government officials manage complaints efficiently. "
    "Suggest the most appropriate next status based on the complaint details and current status."
)


def build_analysis_prompt(complaint: Complaint) -> str:
    return (
        "Analyze this corruption complaint:\n\n"
        f"Title: {complaint.title}\n"
        f"Category: {complaint.category}\n"
        f"Location: {complaint.location or 'Not provided'}\n"
        f"Description: {complaint.description}\n\n"
        "Provide a comprehensive analysis in the following JSON format:\n"
        "{\n"
        '  "urgency_score": <number 1-10>,\n'
        '  "sentiment": "<positive|neutral|negative|critical>",\n'
        '  "key_issues": ["issue1", "issue2"],\n'
        '  "recommended_actions": ["action1", "action2"],\n'
        '  "patterns": "<description of any patterns>",\n'
        '  "risk_level": "<low|medium|high|critical>",\n'
        '  "summary": "<brief 2-3 sentence summary>"\n'
        "}"
    )


def build_draft_note_prompt(complaint: Complaint) -> str:
    return (
        "Write a professional note to acknowledge this complaint:\n\n"
        f"Title: {complaint.title}\n"
        f"Category: {complaint.category}\n"
        f"Status: {complaint.status}\n"
        f"Description: {complaint.description}\n\n"
        "Write a brief (3-4 sentences) note that acknowledges the complaint, explains what will happen next, "
        "provides a realistic timeline and thanks the citizen for reporting."
    )


def build_suggest_status_prompt(complaint: Complaint) -> str:
    return (
        "Based on this complaint, suggest the next appropriate status:\n\n"
        f"Current Status: {complaint.status}\n"
        f"Title: {complaint.title}\n"
        f"Category: {complaint.category}\n"
        f"Description: {complaint.description}\n\n"
        f"Suggest one of: {', '.join(COMPLAINT_STATUSES)}\n"
        "Also provide a brief reason for this suggestion.\n\n"
        "Respond in JSON format:\n"
        '{\n  "suggested_status": "<status>",\n  "reason": "<brief explanation>"\n}'
    )


_FENCED_JSON = re.compile(r"```json\n([\s\S]*?)\n```")
_BRACED_SPAN = re.compile(r"\{[\s\S]*\}")


def extract_json(content: str) -> Any:
    """Parse JSON from model output: fenced ```json block, else outermost braces, else the whole text."""
    match = _FENCED_JSON.search(content or "")
    if match:
        candidate = match.group(1)
    else:
        span = _BRACED_SPAN.search(content or "")
        candidate = span.group(0) if span else (content or "")
    return json.loads(candidate)


def _raise_for_status(status: int, body: str = "") -> None:
    if status == 429:
        raise AIRateLimitError(RATE_LIMIT_MESSAGE)
    if status == 402:
        raise AIPaymentRequiredError(PAYMENT_REQUIRED_MESSAGE)
    current_app.logger.error("AI Gateway error", extra={"status": status, "body": body[:2000]})
    raise AIGatewayError(f"AI Gateway error: {status}")


def _call_gateway(system_prompt: str, user_prompt: str) -> str:
    api_key = current_app.config.get("AI_GATEWAY_API_KEY")
    if not api_key:
        raise AIGatewayError("AI_GATEWAY_API_KEY is not configured")

    url = current_app.config.get("AI_GATEWAY_URL")
    payload = {
        "model": current_app.config.get("AI_GATEWAY_MODEL", "google/gemini-2.5-flash"),
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": current_app.config.get("AI_TEMPERATURE", 0.7),
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    current_app.logger.info(
        "AI gateway request dispatch",
        extra={"provider": "gateway", "url": url, "model": payload["model"], "prompt_preview": user_prompt[:400]},
    )
    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=current_app.config.get("AI_GATEWAY_TIMEOUT", 60),
        )
    except requests.RequestException as exc:
        current_app.logger.warning("AI gateway request failed", extra={"error": str(exc), "url": url})
        raise AIGatewayError("AI Gateway request failed") from exc

    if not 200 <= response.status_code < 300:
        _raise_for_status(response.status_code, response.text or "")

    try:
        body = response.json()
        content = body["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        current_app.logger.error(
            "AI gateway response missing content",
            extra={"status": response.status_code, "raw_text_snippet": (response.text or "")[:2000]},
        )
        raise AIGatewayError("AI Gateway returned no content") from exc
    return content or ""


def _call_gemini(system_prompt: str, user_prompt: str) -> str:
    api_key = current_app.config.get("GEMINI_API_KEY")
    if not api_key:
        raise AIGatewayError("GEMINI_API_KEY is not configured")

    client = genai.Client(api_key=api_key)
    config = types.GenerateContentConfig(
        system_instruction=system_prompt,
        temperature=current_app.config.get("AI_TEMPERATURE", 0.7),
    )
    current_app.logger.info(
        "Gemini request dispatch",
        extra={"provider": GEMINI_PROVIDER, "model": current_app.config.get("GEMINI_MODEL"), "prompt_preview": user_prompt[:400]},
    )
    try:
        response = client.models.generate_content(
            model=current_app.config.get("GEMINI_MODEL", "gemini-2.5-flash"),
            contents=user_prompt,
            config=config,
        )
    except genai_errors.APIError as exc:
        _raise_for_status(int(exc.code or 502), str(exc))
    return response.text or ""


def complete(system_prompt: str, user_prompt: str) -> str:
    provider = (current_app.config.get("AI_PROVIDER") or "gateway").lower()
    if provider == GEMINI_PROVIDER:
        return _call_gemini(system_prompt, user_prompt)
    return _call_gateway(system_prompt, user_prompt)


class FallbackAnalysis(dict):
    """Placeholder analysis returned when the model reply could not be parsed."""


def fallback_analysis(content: str) -> Dict[str, Any]:
    return FallbackAnalysis(
        {
            "urgency_score": 5,
            "sentiment": "neutral",
            "key_issues": ["Analysis pending"],
            "recommended_actions": ["Manual review required"],
            "patterns": "Unable to determine patterns",
            "risk_level": "medium",
            "summary": content[:200],
            "raw_response": content,
        }
    )


def is_fallback_analysis(analysis: Dict[str, Any]) -> bool:
    return isinstance(analysis, FallbackAnalysis)


def analyze_complaint(complaint: Complaint) -> Dict[str, Any]:
    content = complete(ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt(complaint))
    try:
        analysis = extract_json(content)
    except json.JSONDecodeError:
        current_app.logger.error(
            "Failed to parse AI analysis as JSON",
            extra={"complaint_id": complaint.id, "raw_ai_text": content[:2000]},
        )
        return fallback_analysis(content)
    if not isinstance(analysis, dict):
        return fallback_analysis(content)
    return analysis


def draft_note(complaint: Complaint) -> Dict[str, str]:
    content = complete(DRAFT_NOTE_SYSTEM_PROMPT, build_draft_note_prompt(complaint))
    return {"text": content, "html": markdown_to_html(content)}


def suggest_status(complaint: Complaint) -> Dict[str, Any]:
    content = complete(SUGGEST_STATUS_SYSTEM_PROMPT, build_suggest_status_prompt(complaint))
    try:
        result = extract_json(content)
    except json.JSONDecodeError:
        return {"suggested_status": FALLBACK_STATUS, "reason": content}
    if not isinstance(result, dict):
        return {"suggested_status": FALLBACK_STATUS, "reason": content}

    suggested = str(result.get("suggested_status") or "").strip().lower()
    if suggested not in COMPLAINT_STATUSES:
        suggested = FALLBACK_STATUS
    return {"suggested_status": suggested, "reason": str(result.get("reason") or "")}
