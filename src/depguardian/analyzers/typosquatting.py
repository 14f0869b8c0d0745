"""Name-similarity predicates for typosquatting detection.

Each predicate answers one question: could ``candidate`` be a one-edit
imitation of ``target``? They are tried in ``TECHNIQUES`` order.
"""

from collections.abc import Callable, Iterable

# Visually confusable substrings; either side may stand in for the other
CONFUSABLE_PAIRS = (
    ("l", "1"),
    ("i", "1"),
    ("o", "0"),
    ("rn", "m"),
    ("vv", "w"),
    ("rn", "n"),
)


def is_single_substitution(candidate: str, target: str) -> bool:
    """Same length, exactly one position differs."""
    if len(candidate) != len(target):
        return False
    return sum(1 for a, b in zip(candidate, target) if a != b) == 1


def is_single_insertion_or_omission(candidate: str, target: str) -> bool:
    """One string is the other with exactly one character removed."""
    if abs(len(candidate) - len(target)) != 1:
        return False
    longer, shorter = (candidate, target) if len(candidate) > len(target) else (target, candidate)
    return any(longer[:i] + longer[i + 1:] == shorter for i in range(len(longer)))


def is_adjacent_transposition(candidate: str, target: str) -> bool:
    """Swapping one pair of neighbouring characters turns candidate into target."""
    if len(candidate) != len(target) or candidate == target:
        return False
    for i in range(len(candidate) - 1):
        swapped = candidate[:i] + candidate[i + 1] + candidate[i] + candidate[i + 2:]
        if swapped == target:
            return True
    return False


def is_confusable(candidate: str, target: str) -> bool:
    """Replacing every occurrence of one side of a confusable pair yields target."""
    if candidate == target:
        return False
    for first, second in CONFUSABLE_PAIRS:
        if first in candidate and candidate.replace(first, second) == target:
            return True
        if second in candidate and candidate.replace(second, first) == target:
            return True
    return False


TECHNIQUES: tuple[tuple[str, Callable[[str, str], bool]], ...] = (
    ("character substitution", is_single_substitution),
    ("character insertion or omission", is_single_insertion_or_omission),
    ("adjacent character swap", is_adjacent_transposition),
    ("confusable characters", is_confusable),
)


def find_typosquat_target(name: str, reference: Iterable[str]) -> tuple[str, str] | None:
    """Find the popular package a name appears to imitate.

    Args:
        name: Package name to check.
        reference: Popular package names, checked in order.

    Returns:
        ``(target, technique)`` for the first match, or None. Names that are
        themselves in the reference set never match.
    """
    reference = tuple(reference)
    if name in reference:
        return None

    for target in reference:
        for technique, predicate in TECHNIQUES:
            if predicate(name, target):
                return target, technique
    return None
