from keycoach.services.models import (
    Direction,
    ErrorClass,
    Pattern,
    PatternKind,
    ROOT_NOTES,
    Verdict,
    VerdictKind,
)

# Spellings a speech engine tends to get wrong
NOTE_PRONUNCIATIONS = {
    "Bb": "B Flat",
    "Eb": "E Flat",
    "Ab": "A Flat",
    "C#": "C Sharp",
    "F#": "F Sharp",
}


def spoken_note_name(pitch: int, with_octave: bool = False) -> str:
    name = ROOT_NOTES[pitch % 12]
    spoken = NOTE_PRONUNCIATIONS.get(name, name)
    if with_octave:
        return f"{spoken} {pitch // 12 - 1}"
    return spoken


def _spoken_pattern(pattern: Pattern) -> str:
    # Pattern names start with the written root, e.g. "Bb major scale"
    _, _, rest = pattern.name.partition(" ")
    return f"{spoken_note_name(pattern.root_pitch)} {rest}"


def render_prompt(pattern: Pattern) -> str:
    if pattern.kind is PatternKind.SEQUENCE:
        return "Listen, then play it back."
    if pattern.kind is PatternKind.CHORD:
        return f"Play a {_spoken_pattern(pattern)}."
    if pattern.direction is Direction.BOTH:
        return f"Play a {_spoken_pattern(pattern)}, up and back down."
    return f"Play a {_spoken_pattern(pattern)}, {pattern.direction.value}."


def render_verdict(verdict: Verdict) -> str:
    if verdict.kind is VerdictKind.MATCHED:
        return "Nice, that's it."
    if verdict.kind is VerdictKind.TIMED_OUT:
        return "I didn't hear anything. Let's try that again."
    if verdict.kind is VerdictKind.INCOMPLETE:
        return (f"I heard {len(verdict.observed)} of {verdict.expected_count} notes. "
                "Try playing it all the way through.")
    if verdict.kind is VerdictKind.CANCELLED:
        return ""

    d = verdict.diagnosis
    if d is None:
        return "Not quite. Try again."
    expected = spoken_note_name(d.expected)
    observed = spoken_note_name(d.observed)
    if d.classification is ErrorClass.LIKELY_ACCIDENTAL:
        hint = "Check your sharps and flats."
    elif d.classification is ErrorClass.WRONG_OCTAVE:
        hint = "Right note, wrong octave."
    else:
        hint = "Wrong note."
    return f"Close. Note {d.position} should be {expected}, you played {observed}. {hint}"
