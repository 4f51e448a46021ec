"""Phrase tables shared by the follow-up classifier and the assignment resolver.

All matching is case-insensitive substring matching on the raw message, except
single keywords (weak follow-up words and keyword categories), which match at
word starts so "run" does not fire on "brunch" and "back" not on "feedback".
"""

import re
from typing import Dict, Iterable, Optional, Set, Tuple

ASSIGNMENT_MARKER = "your assignment:"
CHECK_BACK_TRAILER = "come back in"

# Reporting back or excuse-making.
REPORTING_BACK_PHRASES: Tuple[str, ...] = (
    "i did it",
    "i did the",
    "i did that",
    "i completed",
    "i finished",
    "i wrote",
    "i tried",
    "i didn't",
    "i did not",
    "i couldn't",
    "i could not",
    "i failed",
    "i forgot",
    "i skipped",
    "i haven't",
    "i have not",
    "my excuse",
    "reporting back",
    "i'm back",
    "i am back",
    "like you asked",
    "as you asked",
    "you told me to",
    "my assignment",
    "the assignment",
    "finished all",
    "finished both",
    "did both",
    "did all",
)

# Generic words that only count when the previous response handed out an assignment.
WEAK_FOLLOW_UP_KEYWORDS: Tuple[str, ...] = (
    "did",
    "done",
    "task",
    "back",
    "excuse",
    "assignment",
    "completed",
    "finished",
)

# Claims of having completed one specific thing.
COMPLETION_PHRASES: Tuple[str, ...] = (
    "i did it",
    "i did the",
    "i did that",
    "i've done",
    "i have done",
    "done it",
    "i completed",
    "i finished",
    "i wrote",
    "i made",
    "i called",
    "i talked",
    "i went",
    "i tried",
    "i practiced",
    "i followed through",
    "did the assignment",
    "like you asked",
    "as you asked",
)

# Claims of having completed everything at once.
MASS_COMPLETION_PHRASES: Tuple[str, ...] = (
    "finished all",
    "finished both",
    "finished everything",
    "finished them all",
    "did all",
    "did both",
    "did everything",
    "did them all",
    "done all",
    "done both",
    "done with all",
    "done with both",
    "done everything",
    "completed all",
    "completed both",
    "completed everything",
    "all of them",
    "both of them",
    "all done",
    "all the assignments",
    "every assignment",
    "everything you asked",
)

# Any of these makes a message a follow-up. Every completion claim the resolver
# understands is included, so a report is never dropped before resolution.
STRONG_FOLLOW_UP_PHRASES: Tuple[str, ...] = tuple(
    dict.fromkeys(REPORTING_BACK_PHRASES + COMPLETION_PHRASES + MASS_COMPLETION_PHRASES)
)

KEYWORD_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "writing": ("write", "wrote", "written", "list", "journal", "note", "letter"),
    "communication": ("call", "phone", "text", "message", "talk", "tell", "conversation", "email"),
    "exercise": ("run", "walk", "gym", "workout", "exercise", "push-up", "pushup", "stretch"),
    "reflection": ("reflect", "meditat", "think", "thought", "notice", "observ"),
    "planning": ("plan", "schedule", "calendar", "deadline", "timer", "routine"),
    "creation": ("build", "built", "create", "made", "make", "launch", "idea", "prototype", "draft"),
    "work": ("job", "boss", "apply", "applied", "resume", "interview", "client", "pitch"),
    "relationships": ("friend", "family", "partner", "date", "mom", "dad", "parent"),
    "home": ("clean", "declutter", "tidy", "organize", "organise", "room", "desk"),
    "money": ("budget", "spend", "spent", "save", "saving", "money", "bill"),
}


def contains_any(text: str, phrases: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)


def contains_word(text: str, words: Iterable[str]) -> bool:
    """True if any of `words` starts a word in `text`."""
    lowered = text.lower()
    return any(re.search(r"\b" + re.escape(word), lowered) for word in words)


def has_assignment(response: Optional[str]) -> bool:
    return bool(response) and ASSIGNMENT_MARKER in response.lower()  # type: ignore[union-attr]


def claims_mass_completion(message: str) -> bool:
    return contains_any(message, MASS_COMPLETION_PHRASES)


def claims_completion(message: str) -> bool:
    return contains_any(message, COMPLETION_PHRASES)


def assignment_text(response: str) -> str:
    """The action after the assignment marker, without the standard check-back trailer."""
    index = response.lower().rfind(ASSIGNMENT_MARKER)
    if index == -1:
        return response
    tail = response[index + len(ASSIGNMENT_MARKER):]
    trailer = tail.lower().find(CHECK_BACK_TRAILER)
    if trailer != -1:
        tail = tail[:trailer]
    return tail.strip() or response


def keyword_categories(text: str) -> Set[str]:
    return {category for category, keywords in KEYWORD_CATEGORIES.items() if contains_word(text, keywords)}
