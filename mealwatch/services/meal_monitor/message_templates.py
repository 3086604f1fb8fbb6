"""Check-in message bank.

Messages are short, warm and never mention surveillance or data. Higher
concern gets the gentler tone so a struggling student is not alarmed.
"""
import random
from typing import Dict, Optional, Tuple

from mealwatch.shared.models import AnomalyReason, CheckInTone, CheckInType, PatternAnalysis

MESSAGE_TEMPLATES: Dict[CheckInType, Dict[CheckInTone, Tuple[str, ...]]] = {
    CheckInType.MEAL_CONCERN: {
        CheckInTone.GENTLE: (
            "Hi! It looks like a few meals may have slipped by lately. Just checking in - how are you feeling?",
            "Hey there, we care about how you're doing. If meals have been hard lately, we're here to help.",
            "Just wanted to check in - your meal routine seems to have changed a bit. Is everything okay?",
        ),
        CheckInTone.SUPPORTIVE: (
            "We're here for you. If mealtimes feel like a lot right now, you don't have to handle it alone.",
            "Your wellbeing matters to us. If you want to talk about anything, meals included, we're listening.",
            "Busy weeks happen and meals get skipped. If you could use some support, we're one message away.",
        ),
        CheckInTone.ENCOURAGING: (
            "You've got this! If planning meals feels overwhelming, we have resources that could help.",
            "Looking after yourself includes eating well, and we're happy to support you with that.",
            "Every small step counts. If you're building better meal habits, we're cheering you on!",
        ),
    },
    CheckInType.WELLNESS_CHECK: {
        CheckInTone.GENTLE: (
            "Just checking in - how has your week been? We're here if you'd like to chat.",
            "Hi! We wanted to see how you're doing. A quick check-in can sometimes help.",
            "Hey there, how are you feeling today? It's okay not to be okay sometimes.",
        ),
        CheckInTone.SUPPORTIVE: (
            "We care about you. If things are tough right now, support is available whenever you want it.",
            "Your mental health matters. If you need someone to talk to, we're ready to listen.",
            "Life can be a lot, but you don't have to face it alone. We're here for you.",
        ),
        CheckInTone.ENCOURAGING: (
            "You're doing great. Remember to be kind to yourself today.",
            "Every day is a fresh chance to look after yourself. We believe in you!",
            "You're stronger than you think. If you want a little encouragement, we're here.",
        ),
    },
    CheckInType.SUPPORT_OFFER: {
        CheckInTone.GENTLE: (
            "We're thinking of you. If you'd like any support or resources, just let us know.",
            "Hi! We have some helpful resources if you're interested - no pressure at all.",
            "Hey, we're here if you need anything, whether that's resources, support or someone to listen.",
        ),
        CheckInTone.SUPPORTIVE: (
            "You're not alone in this. Resources and support are available whenever you're ready.",
            "We believe in you. If you'd like to look at support options, we're happy to help.",
            "Asking for help takes strength. We're here whenever you need us.",
        ),
        CheckInTone.ENCOURAGING: (
            "You've got this, and we've got your back. Support is here whenever you need it.",
            "You're doing amazing. If you want to explore ways to feel even better, we're here.",
            "Keep going! We're cheering you on every step of the way.",
        ),
    },
}

FOLLOW_UP_MESSAGE = (
    "Thank you for reaching out. Here are some resources that might help right now, "
    "and a counselor is available if you'd like to talk to someone."
)


def data_clause(analysis: PatternAnalysis) -> Optional[str]:
    """Sentence grounding the message in the observed pattern, if any."""
    details = analysis.details or {}
    if analysis.reason is AnomalyReason.MISSED_CONSECUTIVE:
        misses = details.get("max_consecutive_misses")
        if misses:
            return f"We noticed you've missed {misses} meals in a row."
    elif analysis.reason is AnomalyReason.FREQUENCY_DROP:
        drop = details.get("drop_percentage")
        if drop:
            return f"We noticed your meal attendance has dropped by about {round(drop * 100)}%."
    return None


def compose_message(
    check_in_type: CheckInType,
    tone: CheckInTone,
    analysis: PatternAnalysis,
    rng: random.Random,
) -> str:
    """Pick a template for the type and tone and append the data clause.

    Args:
        check_in_type: Kind of check-in
        tone: Message framing
        analysis: Verdict that triggered the check-in
        rng: Random source for template choice (seed it for reproducibility)

    Returns:
        Final message text
    """
    message = rng.choice(MESSAGE_TEMPLATES[check_in_type][tone])
    clause = data_clause(analysis)
    return f"{message} {clause}" if clause else message
