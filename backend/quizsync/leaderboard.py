from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional

from .models import Player


@dataclass(frozen=True)
class LeaderboardEntry:
    id: str
    nickname: str
    badge: str
    score: int
    streak: int
    rank: int


@dataclass(frozen=True)
class LeaderboardProjection:
    leaderboard: List[LeaderboardEntry] = field(default_factory=list)
    current_player_rank: Optional[int] = None
    current_player_entry: Optional[LeaderboardEntry] = None
    total_players: int = 0

    def as_dict(self) -> Dict:
        return {
            "leaderboard": [asdict(e) for e in self.leaderboard],
            "currentPlayerRank": self.current_player_rank,
            "currentPlayerEntry": asdict(self.current_player_entry) if self.current_player_entry else None,
            "totalPlayers": self.total_players,
        }


def project_leaderboard(
    players: Mapping[str, Player],
    current_player_id: Optional[str] = None,
    top_n: int = 5,
) -> LeaderboardProjection:
    """Rank every player by score, highest first.

    Ties keep insertion order and still get distinct ranks. Ranks are taken over
    the full field before truncating to ``top_n``, so the requesting player's
    rank is reported even when they fall outside the visible slice.
    """
    ordered = sorted(players.items(), key=lambda item: -item[1].score)
    entries = [
        LeaderboardEntry(
            id=pid,
            nickname=p.nickname,
            badge=p.badge,
            score=p.score,
            streak=p.streak,
            rank=idx + 1,
        )
        for idx, (pid, p) in enumerate(ordered)
    ]

    current = None
    if current_player_id is not None:
        current = next((e for e in entries if e.id == current_player_id), None)

    return LeaderboardProjection(
        leaderboard=entries[: max(0, top_n)],
        current_player_rank=current.rank if current else None,
        current_player_entry=current,
        total_players=len(entries),
    )
