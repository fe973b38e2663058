"""
Prompt templates for avatar scenes.

Everything here is plain text concatenation. Scene 1 establishes the
presenter and voice; later scenes only ever refer to "the same presenter"
so the provider keeps the look and voice it already rendered.
"""

import logging
import re
from typing import Optional

from .models import ScenePrompt

logger = logging.getLogger(__name__)


# ── Disclaimers ──────────────────────────────────────────────────────────────

CONTENT_POLICY_DISCLAIMER = """
IMPORTANT DISCLAIMER:

The content is high-level, neutral, and educational in nature.
It does not provide financial, legal, medical, or professional advice,
and does not make promises, guarantees, or persuasive claims.

NO ON-SCREEN TEXT (MANDATORY):
- NO captions, subtitles, or text overlays
- NO visible text, titles, or graphics with words
- NO signs, labels, or written content in the scene
- Dialogue is AUDIO ONLY - never display spoken words as text on screen

SCENE CONTENT:
"""

AVATAR_DISCLAIMER = """IMPORTANT DISCLAIMER: This scene features a fully fictional, AI-generated virtual presenter avatar.
This character does not represent any real person, living or deceased.
A generic virtual presenter appears in a non-identifiable professional setting,
demonstrating and explaining general concepts in an educational manner.

SCENE CONTENT:
"""


# ── Voice blocks ─────────────────────────────────────────────────────────────

_VOICE_RULES = """ANTI-ROBOTIC RULES (MANDATORY):
- NO monotone delivery - vary pitch naturally
- NO rushed speech - take natural pauses between sentences
- NO mechanical cadence - avoid evenly-spaced word delivery
- NO over-enunciation - speak conversationally, not like reading a script

NATURAL SPEECH PATTERNS:
- Brief pauses after important points
- Slight emphasis on key benefit words
- Warm smile in the voice (audible friendliness)
- Natural breath between sentences
- Conversational contractions (don't, we're, you'll, it's)

"""


def voice_identity_block(avatar_name: Optional[str], industry: Optional[str]) -> str:
    owner = f" - {avatar_name}'s voice" if avatar_name else ""
    trade = f" {industry}" if industry else ""
    return (
        "VOICE & SPEECH REQUIREMENTS (CRITICAL - ESTABLISHES VOICE FOR ALL SCENES):\n\n"
        f"VOICE CHARACTER{owner} must be:\n"
        "- Tone: Warm, confident, and genuinely conversational - like speaking to a trusted colleague\n"
        "- Clarity: Crystal clear articulation, every word distinctly pronounced\n"
        "- Pace: Natural speaking rhythm with appropriate pauses between thoughts\n"
        "- Energy: Professional enthusiasm without sounding salesy or robotic\n"
        f"- Authenticity: Sounds like a real{trade} professional, not a text-to-speech bot\n\n"
        + _VOICE_RULES
    )


def voice_continuity_block(scene_number: int, industry: Optional[str]) -> str:
    trade = f" {industry}" if industry else ""
    return (
        f"VOICE CONTINUITY (MANDATORY FOR SCENE {scene_number}):\n"
        "This scene's voice MUST match previous scenes exactly:\n"
        "- Same voice pitch and timbre as Scene 1\n"
        "- Same speaking pace and rhythm\n"
        "- Same warmth and energy level\n"
        "- Same accent and pronunciation style\n"
        "- NO sudden changes in voice character\n\n"
        "VOICE CHARACTER - the same presenter's voice must be:\n"
        "- Tone: Warm, confident, conversational - NOT robotic or monotone\n"
        f"- Authenticity: Real{trade} professional, not text-to-speech\n\n"
        + _VOICE_RULES
    )


def speech_delivery_block(script: str, speaker: str = "The presenter", same_voice: bool = False) -> str:
    if not script:
        return ""
    voice = "the EXACT SAME voice as previous scenes" if same_voice else "a warm, professional tone"
    return (
        "\n\nAVATAR SPEECH DELIVERY:\n"
        f"{speaker} speaks with {voice} - NOT robotic or monotone:\n"
        f"\"{script}\"\n\n"
        "Voice Delivery Notes:\n"
        "- Deliver naturally as if explaining to a friend\n"
        "- Pause briefly between sentences for clarity\n"
        "- Slight emphasis on key benefit words\n"
        "- Build connection - speak directly TO the viewer"
    )


# ── Continuation (scenes 2..N) ───────────────────────────────────────────────

def hard_cut_continuation(scene: ScenePrompt, scene_number: int, duration: int) -> str:
    """Continuation tuned for direct concatenation: the segment ends on a near freeze-frame."""
    slow_down = duration - 3
    settle = duration - 2
    freeze = duration - 1
    action = duration - 1
    tail = duration - action

    text = (
        "SEAMLESS VIDEO CONTINUATION - HARD-CUT OPTIMIZED:\n\n"
        "**CRITICAL: This segment will be DIRECTLY CONCATENATED to previous video**\n"
        f"**Scene {scene_number} - Duration: {duration} seconds total**\n\n"
        "1. **STARTING POSITION MATCH**: the same presenter starts in the EXACT pose from the previous scene end.\n"
        f"2. **CAMERA LOCK**: camera frozen in the same position for all {duration} seconds.\n"
        "3. **MOVEMENT CONSTRAINTS**: stay within a small area, slow and deliberate movements only.\n"
        "4. **ENDING PROTOCOL**:\n"
        f"   - Seconds 0-{slow_down}: Normal action/dialogue for scene\n"
        f"   - Seconds {slow_down}-{settle}: BEGIN SLOWING DOWN all movements\n"
        f"   - Seconds {settle}-{freeze}: SETTLE into stable neutral pose\n"
        f"   - Seconds {freeze}-{duration}: HOLD nearly still (breathing-level movement only)\n"
        f"5. **AUDIO TIMING**: complete all dialogue by second {action}; final {tail} second(s) silent.\n"
        "6. **VISUAL CONTINUITY**: the same presenter, same clothing, same lighting and shadow direction.\n\n"
        "Scene-Specific Action:\n"
        f"{scene.prompt}"
    )
    if scene.camera:
        text += f"\n\nCamera: {scene.camera}"
    if scene.script:
        text += speech_delivery_block(scene.script, "The same presenter", same_voice=True)
        text += f"\n- Complete speaking by second {action}"
    return text


def single_scene_continuation(original_prompt: str, duration: int) -> str:
    """Prompt for the one extension of a single-scene job."""
    return (
        "Continue the video naturally from where it ended.\n"
        "The same presenter keeps the same appearance, clothing, position and voice.\n"
        f"Camera stays locked. Over {duration} seconds, finish the thought with a calm closing "
        "gesture and end on a stable neutral pose facing camera.\n\n"
        f"Original scene context:\n{original_prompt}"
    )


# ── Sanitizer ────────────────────────────────────────────────────────────────

BLOCKED_TERMS = [
    re.compile(r"\b(kill|murder|attack|weapon|gun|knife|blood|death|die|dying|violent|fight|wound|injure)\b", re.I),
    re.compile(r"\b(sexy|nude|naked|intimate|sexual|sensual|erotic|seductive)\b", re.I),
    re.compile(r"\b(hate|racist|discrimination|slur|offensive|bigot)\b", re.I),
    re.compile(r"\b(damn|hell|ass|crap)\b", re.I),
    re.compile(r"\b(child|kid|minor|teenager|teen|youth|juvenile|underage)\b", re.I),
    re.compile(r"\b(Trump|Biden|Obama|Putin|Musk|Zuckerberg|Bezos|celebrity)\b", re.I),
    re.compile(r"\b(church|mosque|temple|priest|pastor|minister|imam|rabbi|religious|spiritual|divine|blessed|holy|sacred)\b", re.I),
    re.compile(r"\b(drug|cocaine|heroin|meth|marijuana|weed|drunk|alcohol|beer|wine|vodka)\b", re.I),
]

_WHITESPACE = re.compile(r"\s+")


def sanitize_for_provider(text: str) -> str:
    """Strip terms providers reject outright and collapse whitespace."""
    sanitized = text
    for pattern in BLOCKED_TERMS:
        sanitized = pattern.sub("", sanitized)
    sanitized = _WHITESPACE.sub(" ", sanitized).strip()
    if sanitized != _WHITESPACE.sub(" ", text).strip():
        logger.info("Prompt sanitized for provider content policy")
    return sanitized


# ── Seeds ────────────────────────────────────────────────────────────────────

def seed_for(generation_id: str) -> int:
    """Deterministic 10000-99999 seed so every scene of a job shares one seed."""
    h = 0
    for ch in generation_id:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % 90000 + 10000
