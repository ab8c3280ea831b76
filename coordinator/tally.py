"""
Salted commitment chain over per-option vote totals
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from merkle import FixedArityTree
from primitives import gen_random_salt, hash2

from .errors import CommitmentMismatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TallyCheckpoint:
    """Totals, the salt that hid them and the commitment binding both"""
    totals: Tuple[int, ...]
    salt: int
    commitment: int

    @classmethod
    def genesis(cls, size: int) -> 'TallyCheckpoint':
        return cls(totals=(0,) * size, salt=0, commitment=0)


class CommitmentChain:
    """Each batch consumes the previous checkpoint and produces the next.

    The genesis commitment is the sentinel 0.  Every later commitment is
    hash(resultsRoot(totals), salt), so continuing the chain requires the
    exact totals and salt of the last accepted checkpoint.
    """

    def __init__(self, vote_option_tree_depth: int):
        self.vote_option_tree_depth = vote_option_tree_depth
        self.size = 5 ** vote_option_tree_depth
        self.last = TallyCheckpoint.genesis(self.size)
        self.history: List[TallyCheckpoint] = [self.last]

    def results_root(self, totals: Sequence[int]) -> int:
        tree = FixedArityTree(5, self.vote_option_tree_depth, 0)
        tree.init_leaves(list(totals))
        return tree.root

    def commit(self, totals: Sequence[int], salt: int) -> int:
        return hash2([self.results_root(totals), salt])

    def verify_checkpoint(self, checkpoint: TallyCheckpoint, expected_commitment: int) -> bool:
        """External check: does the checkpoint open the expected commitment"""
        if len(checkpoint.totals) != self.size:
            return False
        if expected_commitment == 0:
            return checkpoint.salt == 0 and not any(checkpoint.totals)
        return self.commit(checkpoint.totals, checkpoint.salt) == expected_commitment

    def advance(self, checkpoint: TallyCheckpoint, batch_votes: Sequence[int],
                new_salt: Optional[int] = None) -> TallyCheckpoint:
        if not self.verify_checkpoint(checkpoint, self.last.commitment):
            raise CommitmentMismatch(
                f"Supplied totals/salt do not reproduce commitment {self.last.commitment}")
        if len(batch_votes) != self.size:
            raise ValueError(f"Expected {self.size} per-option votes, got {len(batch_votes)}")

        totals = tuple(t + v for t, v in zip(checkpoint.totals, batch_votes))
        salt = gen_random_salt() if new_salt is None else new_salt
        new_checkpoint = TallyCheckpoint(totals=totals, salt=salt,
                                         commitment=self.commit(totals, salt))

        self.last = new_checkpoint
        self.history.append(new_checkpoint)
        logger.info(f"Tally commitment advanced to {new_checkpoint.commitment}")
        return new_checkpoint
