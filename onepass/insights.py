import logging

import requests

from onepass import config

logger = logging.getLogger("onepass.insights")

MEMBER_FALLBACK = "Stable attendance record. Continue standard resumption protocol."
ANALYST_FALLBACK = "Analyst offline. Data integrity remains secured."


def generate_text(prompt: str, timeout: float | None = None) -> str:
    """호스팅 LLM 호출. 실패 시 예외를 그대로 올린다 (화면용 호출은 _safe_generate 사용)"""
    if not config.GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY is not configured")
    response = requests.post(
        config.GEMINI_URL.format(model=config.GEMINI_MODEL),
        params={"key": config.GEMINI_API_KEY},
        json={"contents": [{"parts": [{"text": prompt}]}]},
        timeout=config.INSIGHT_TIMEOUT_SECONDS if timeout is None else timeout,
    )
    response.raise_for_status()
    payload = response.json()
    parts = payload["candidates"][0]["content"]["parts"]
    return "".join(p.get("text", "") for p in parts).strip()


def _safe_generate(prompt: str, fallback: str) -> str:
    try:
        return generate_text(prompt) or fallback
    except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("Insight generation failed, using fallback: %s", e)
        return fallback


def member_insight(member) -> str:
    prompt = (
        f"You are the OnePass assistant. Member: {member.name}, "
        f"Wallet: {member.wallet_balance}, Fines: {member.outstanding_fines}, "
        f"Points: {member.reward_points}. Tone: professional, concise. Provide 1 proactive tip."
    )
    return _safe_generate(prompt, MEMBER_FALLBACK)


def admin_analyst(query: str, members) -> str:
    total_wallet = sum(m.wallet_balance for m in members)
    total_fines = sum(m.outstanding_fines for m in members)
    prompt = (
        f"OnePass admin analyst. System state: {len(members)} members, "
        f"total wallet {total_wallet}, outstanding fines {total_fines}. Question: {query}"
    )
    return _safe_generate(prompt, ANALYST_FALLBACK)
