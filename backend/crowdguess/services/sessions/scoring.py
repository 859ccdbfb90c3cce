from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

EXACT_POINTS = 5
OFF_BY_ONE_POINTS = 3


@dataclass(frozen=True)
class Ballot:
    """A participant's final vote/guess for one session."""
    participant_id: str
    vote: Optional[str] = None
    guess: Optional[int] = None


@dataclass
class ScoreSheet:
    yes_count: int
    no_count: int
    points: Dict[str, int] = field(default_factory=dict)


def tally(ballots: Iterable[Ballot]) -> Tuple[int, int]:
    yes_count = 0
    no_count = 0
    for ballot in ballots:
        if ballot.vote == 'YES':
            yes_count += 1
        elif ballot.vote == 'NO':
            no_count += 1
    return yes_count, no_count


def points_for_guess(guess: Optional[int], actual_yes_count: int) -> int:
    if guess is None:
        return 0
    error = abs(guess - actual_yes_count)
    if error == 0:
        return EXACT_POINTS
    if error == 1:
        return OFF_BY_ONE_POINTS
    return 0


def score_ballots(ballots: Iterable[Ballot]) -> ScoreSheet:
    """Score every ballot against the actual YES count.

    Vote and guess are independent: a ballot without a vote is still
    scored on its guess. Participants with no ballot are simply absent.
    """
    ballots = list(ballots)
    yes_count, no_count = tally(ballots)
    sheet = ScoreSheet(yes_count=yes_count, no_count=no_count)
    for ballot in ballots:
        sheet.points[ballot.participant_id] = points_for_guess(ballot.guess, yes_count)
    return sheet
