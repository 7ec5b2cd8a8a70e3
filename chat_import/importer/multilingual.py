"""
Multilingual text normalization for imported messages.

This module classifies the script composition of message bodies (Latin,
Tamil, mixed "Tanglish") and canonicalizes mixed-script text by
transliterating its Tamil runs into Latin letters.

Design Decisions:
    1. Every function is pure - output depends only on the input string
    2. All text is cleaned: NFC, no U+FFFD, no NULs, LF line endings, trimmed
    3. Only mixed text is transliterated; Tamil-only text keeps its script
    4. Transliteration follows common Tanglish spelling (long vowels doubled)

Transliteration Strategy:
    - Consonant + vowel sign   → consonant letters + vowel letters
    - Consonant + pulli (்)    → bare consonant
    - Bare consonant           → consonant + inherent "a"
    - Independent vowels, aytham, numerals map one-to-one
    - Unmapped Tamil code points are kept unchanged
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict

from chat_import.importer.models import ScriptClass

# Tamil block (U+0B80–U+0BFF)
TAMIL_PATTERN = re.compile(r"[\u0B80-\u0BFF]")
TAMIL_RUN_PATTERN = re.compile(r"[\u0B80-\u0BFF]+")
CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
REPLACEMENT_CHAR = "\ufffd"
PULLI = "\u0bcd"

INDEPENDENT_VOWELS: Dict[str, str] = {
    "அ": "a",
    "ஆ": "aa",
    "இ": "i",
    "ஈ": "ii",
    "உ": "u",
    "ஊ": "uu",
    "எ": "e",
    "ஏ": "ee",
    "ஐ": "ai",
    "ஒ": "o",
    "ஓ": "oo",
    "ஔ": "au",
}

CONSONANTS: Dict[str, str] = {
    "க": "k",
    "ங": "ng",
    "ச": "ch",
    "ஞ": "nj",
    "ட": "t",
    "ண": "n",
    "த": "th",
    "ந": "n",
    "ப": "p",
    "ம": "m",
    "ய": "y",
    "ர": "r",
    "ல": "l",
    "வ": "v",
    "ழ": "zh",
    "ள": "l",
    "ற": "r",
    "ன": "n",
    # Grantha
    "ஜ": "j",
    "ஶ": "sh",
    "ஷ": "sh",
    "ஸ": "s",
    "ஹ": "h",
}

VOWEL_SIGNS: Dict[str, str] = {
    "ா": "aa",
    "ி": "i",
    "ீ": "ii",
    "ு": "u",
    "ூ": "uu",
    "ெ": "e",
    "ே": "ee",
    "ை": "ai",
    "ொ": "o",
    "ோ": "oo",
    "ௌ": "au",
    "ௗ": "au",
}

OTHER_SIGNS: Dict[str, str] = {
    "ஂ": "m",  # anusvara
    "ஃ": "h",  # aytham
    "ௐ": "om",
    "௰": "10",
    "௱": "100",
    "௲": "1000",
}

TAMIL_DIGITS: Dict[str, str] = {chr(0x0BE6 + n): str(n) for n in range(10)}


@dataclass(frozen=True)
class NormalizedText:
    """Result of normalizing one message body."""

    text: str
    original_text: str
    was_normalized: bool
    script: ScriptClass


def _is_latin_letter(char: str) -> bool:
    if "a" <= char.lower() <= "z":
        return True
    if not char.isalpha() or ord(char) < 0x00C0:
        return False
    return unicodedata.name(char, "").startswith("LATIN")


def classify_script(text: str) -> ScriptClass:
    """
    Classify the script composition of a string.

    Only letters count; digits, punctuation and emoji are ignored.

    Args:
        text: Message body.

    Returns:
        ScriptClass.LATIN, TAMIL, MIXED, or OTHER (no Latin or Tamil letters).

    Examples:
        >>> classify_script("see you tomorrow")
        <ScriptClass.LATIN: 'latin'>
        >>> classify_script("வணக்கம்")
        <ScriptClass.TAMIL: 'tamil'>
        >>> classify_script("naan வரேன் da")
        <ScriptClass.MIXED: 'mixed'>
    """
    if not text:
        return ScriptClass.OTHER

    has_tamil = False
    has_latin = False
    for char in text:
        if TAMIL_PATTERN.match(char):
            has_tamil = True
        elif _is_latin_letter(char):
            has_latin = True
        if has_tamil and has_latin:
            return ScriptClass.MIXED

    if has_tamil:
        return ScriptClass.TAMIL
    if has_latin:
        return ScriptClass.LATIN
    return ScriptClass.OTHER


def clean_text(raw: str) -> str:
    """
    Apply the cleanup every message body receives.

    Examples:
        >>> clean_text("  hi\\r\\nthere\\x00 ")
        'hi\\nthere'
    """
    if not raw:
        return ""

    cleaned = unicodedata.normalize("NFC", raw)
    cleaned = cleaned.replace(REPLACEMENT_CHAR, "")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = CONTROL_PATTERN.sub("", cleaned)
    return cleaned.strip()


def transliterate_tamil(text: str) -> str:
    """
    Transliterate Tamil characters into Latin letters, leaving the rest alone.

    Args:
        text: NFC-normalized text.

    Returns:
        Text with every mapped Tamil code point romanised.

    Examples:
        >>> transliterate_tamil("வணக்கம்")
        'vanakkam'
        >>> transliterate_tamil("சாப்பிட்டியா")
        'chaappittiyaa'
    """
    out = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char in CONSONANTS:
            base = CONSONANTS[char]
            following = text[i + 1] if i + 1 < length else ""
            if following == PULLI:
                out.append(base)
                i += 2
                continue
            if following in VOWEL_SIGNS:
                out.append(base + VOWEL_SIGNS[following])
                i += 2
                continue
            out.append(base + "a")
        elif char in INDEPENDENT_VOWELS:
            out.append(INDEPENDENT_VOWELS[char])
        elif char in VOWEL_SIGNS:
            out.append(VOWEL_SIGNS[char])
        elif char in TAMIL_DIGITS:
            out.append(TAMIL_DIGITS[char])
        elif char in OTHER_SIGNS:
            out.append(OTHER_SIGNS[char])
        elif char == PULLI:
            pass
        else:
            out.append(char)
        i += 1
    return "".join(out)


def normalize_text(raw: str) -> NormalizedText:
    """
    Normalize a message body.

    Latin-only and Tamil-only text is cleaned but otherwise kept. Mixed text
    is cleaned and its Tamil runs transliterated, so the canonical form is
    Latin script; the cleaned source stays available as original_text.

    Args:
        raw: Message body as read from the export.

    Returns:
        NormalizedText with canonical text, original text, flag and script.

    Examples:
        >>> normalize_text("naan வரேன் da").text
        'naan vareen da'
        >>> normalize_text("hello").was_normalized
        False
    """
    original = clean_text(raw)
    script = classify_script(original)

    if script != ScriptClass.MIXED:
        return NormalizedText(
            text=original,
            original_text=original,
            was_normalized=False,
            script=script,
        )

    canonical = TAMIL_RUN_PATTERN.sub(lambda m: transliterate_tamil(m.group(0)), original)
    return NormalizedText(
        text=canonical,
        original_text=original,
        was_normalized=True,
        script=script,
    )
