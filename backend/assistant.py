"""
Parking chat assistant backed by xAI Grok, with rule-based answers when Grok is unavailable
"""
from datetime import datetime
from typing import Dict, Any, Optional

from config import get_settings
from exceptions import ExternalAPIException
from logging_config import get_logger
from services import GrokClient

logger = get_logger(__name__)

FALLBACK_MODEL = "intelligent-fallback"

SYSTEM_PROMPT = """You are a helpful parking assistant AI powered by Grok. You help users find parking spots, provide pricing information, estimate availability, and give navigation advice.

Context: {context}
User Location: {location}

Be concise, helpful, and friendly. Focus on practical parking advice. If you don't have specific real-time data, provide general guidance and suggest checking current conditions."""

NEARBY_ANSWER = """**Finding Nearby Parking:**

- **Street Parking**: Check for metered spots within 2-3 blocks
- **Parking Garages**: Look for covered options with hourly rates
- **Shopping Centers**: Often have free parking with purchase
- **Apps to Try**: ParkWhiz, SpotHero, or local parking apps

**Tip**: Arrive 10-15 minutes early to account for parking search time!"""

PRICE_ANSWER = """**Parking Pricing Guide:**

- **Street Meters**: Usually $1-3/hour
- **Parking Garages**: $5-15/hour, daily rates $15-30
- **Premium Locations**: $10-25/hour in busy areas
- **Free Options**: Some malls, restaurants (with validation)

**Money-Saving Tips**: Look for early bird specials, weekend rates, or validation deals!"""

NAVIGATION_ANSWER = """**Navigation & Parking:**

- **Plan Ahead**: Check parking before you leave
- **Alternative Routes**: Avoid busy areas during peak hours
- **Backup Options**: Have 2-3 parking spots in mind
- **Walking Distance**: Consider spots 2-3 blocks away

**Pro Tip**: Check real-time parking availability before you set off!"""

TIMING_ANSWER = """**Best Parking Times:**

- **Avoid Rush Hours**: 7-9 AM, 5-7 PM on weekdays
- **Best Times**: Mid-morning (10 AM-12 PM) or mid-afternoon (2-4 PM)
- **Weekend Peak**: Saturday 12-6 PM is busiest
- **Early Bird**: Arrive before 8 AM for best selection

**Smart Timing**: Leave 15 minutes earlier to reduce parking stress!"""

COVERED_ANSWER = """**Covered Parking Options:**

- **Multi-level Garages**: Most secure, weather-protected
- **Underground Parking**: Usually in downtown areas
- **Shopping Mall Garages**: Often free with validation
- **Hotel Parking**: Sometimes available for non-guests

**Benefits**: Protection from weather, better security, easier to find your car!"""

GENERAL_ANSWER = """**I'm here to help with parking!**

**Ask me about:**
- "Find parking near [location]"
- "What are parking prices like?"
- "Best time to find parking"
- "Covered parking options"
- "Navigation to parking"

**Quick Tips**:
- Plan ahead for busy areas
- Consider walking 2-3 blocks for better rates
- Check apps like ParkWhiz or SpotHero
- Look for validation deals at restaurants/shops"""

# Checked in order; first match wins
FALLBACK_RULES = [
    (("parking near", "nearby parking"), NEARBY_ANSWER),
    (("price", "cost", "cheap"), PRICE_ANSWER),
    (("navigation", "directions", "route"), NAVIGATION_ANSWER),
    (("time", "when", "busy"), TIMING_ANSWER),
    (("covered", "garage", "indoor"), COVERED_ANSWER),
]


def fallback_answer(message: str) -> str:
    lowered = message.lower()
    for keywords, answer in FALLBACK_RULES:
        if any(keyword in lowered for keyword in keywords):
            return answer
    return GENERAL_ANSWER


def _fallback_response(message: str) -> Dict[str, Any]:
    return {
        "response": fallback_answer(message),
        "model": FALLBACK_MODEL,
        "timestamp": datetime.utcnow(),
        "success": True,
        "fallback": True,
    }


async def chat(message: str, context: Optional[str] = None, location: Optional[str] = None) -> Dict[str, Any]:
    settings = get_settings()
    if not settings.xai_api_key:
        logger.warning("XAI_API_KEY not configured, using fallback answers")
        return _fallback_response(message)

    messages = [
        {
            "role": "system",
            "content": SYSTEM_PROMPT.format(
                context=context or "general_parking_assistance",
                location=location or "unknown",
            ),
        },
        {"role": "user", "content": message},
    ]

    try:
        async with GrokClient(settings.xai_api_key) as client:
            data = await client.chat_completion(messages, settings.xai_model, max_tokens=200, temperature=0.7)
    except ExternalAPIException as e:
        logger.error(f"Grok request failed: {e.message}")
        return _fallback_response(message)
    except ValueError as e:
        logger.error(f"Grok returned invalid JSON: {e}")
        return _fallback_response(message)

    choices = data.get("choices") or []
    content = (choices[0].get("message") or {}).get("content") if choices else None
    if not content:
        logger.warning("Grok returned no choices")
        return _fallback_response(message)

    return {
        "response": content,
        "model": settings.xai_model,
        "timestamp": datetime.utcnow(),
        "success": True,
        "fallback": False,
    }
