"""
Coordinator context: the single owner of all round state
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from primitives import Keypair, Point, StatusOracle, hash2

from .errors import PeriodError
from .messages import MessageQueue
from .state import StateStore
from .tally import CommitmentChain

logger = logging.getLogger(__name__)


class CostModel(Enum):
    LINEAR = "linear"
    QUADRATIC = "quadratic"

    def cost(self, weight: int) -> int:
        if self is CostModel.QUADRATIC:
            return weight * weight
        return weight


class Period(Enum):
    FILLING = 0
    PROCESSING = 1
    TALLYING = 2
    ENDED = 3


@dataclass
class RoundParameters:
    state_tree_depth: int = 2
    int_state_tree_depth: int = 1
    vote_option_tree_depth: int = 1
    batch_size: int = 5
    max_vote_options: int = 5
    cost_model: CostModel = CostModel.LINEAR
    voice_credits: int = 100

    def __post_init__(self):
        if isinstance(self.cost_model, str):
            self.cost_model = CostModel(self.cost_model)
        if self.max_vote_options > 5 ** self.vote_option_tree_depth:
            raise ValueError("max_vote_options exceeds the vote option tree capacity")
        if self.int_state_tree_depth > self.state_tree_depth:
            raise ValueError("int_state_tree_depth cannot exceed state_tree_depth")

    @property
    def tally_batch_size(self) -> int:
        return 5 ** self.int_state_tree_depth


class CoordinatorContext:
    """Everything the coordinator mutates, behind one explicit handle.

    Components receive the context instead of reaching for module state, so a
    fresh context is a fresh round.
    """

    def __init__(self, params: RoundParameters, keypair: Optional[Keypair] = None):
        self.params = params
        self.keypair = keypair or Keypair()
        self.oracle = StatusOracle(self.keypair.priv_key)

        self.store = StateStore(params.state_tree_depth, params.vote_option_tree_depth)
        self.vote_queue = MessageQueue()
        self.deactivate_queue = MessageQueue()

        self.period = Period.FILLING
        self.processed_deactivate_count = 0
        self.msg_end_idx = 0
        self.state_salt = 0
        self.state_commitment = 0

        self.tally = CommitmentChain(params.vote_option_tree_depth)
        self.tally_batch_num = 0

        self.batch_number = 0

    @property
    def coord_pub_key(self) -> Point:
        return self.keypair.pub_key

    @property
    def coord_pub_key_hash(self) -> int:
        return self.keypair.pub_key_hash()

    def require_period(self, *periods: Period):
        if self.period not in periods:
            allowed = ", ".join(p.name for p in periods)
            raise PeriodError(f"Operation requires period {allowed}, current is {self.period.name}")

    # ------------------------------------------------------------------
    # Filling period
    # ------------------------------------------------------------------

    def sign_up(self, pub_key: Point, balance: Optional[int] = None) -> int:
        self.require_period(Period.FILLING)
        return self.store.register(pub_key, self.params.voice_credits if balance is None else balance)

    def push_message(self, ciphertext, enc_pub_key: Point):
        self.require_period(Period.FILLING)
        message, command = self.vote_queue.push(ciphertext, enc_pub_key, self.keypair.priv_key)
        logger.info(f"Queued vote message {len(self.vote_queue) - 1} "
                    f"(chain hash {message.hash})")
        return message, command

    def push_deactivate_message(self, ciphertext, enc_pub_key: Point):
        self.require_period(Period.FILLING)
        message, command = self.deactivate_queue.push(ciphertext, enc_pub_key, self.keypair.priv_key)
        logger.info(f"Queued deactivate message {len(self.deactivate_queue) - 1}")
        return message, command

    def end_vote_period(self):
        self.require_period(Period.FILLING)
        self.period = Period.PROCESSING
        self.msg_end_idx = len(self.vote_queue)
        self.state_salt = 0
        self.state_commitment = hash2([self.store.state_root, 0])
        logger.info(f"Vote period ended with {len(self.vote_queue)} messages "
                    f"and {self.store.num_signups} signups")
        if self.msg_end_idx == 0:
            self.end_processing_period()

    def end_processing_period(self):
        self.require_period(Period.PROCESSING)
        self.period = Period.TALLYING
        self.tally_batch_num = 0
        logger.info("Processing period ended")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    _SNAPSHOT_FIELDS = (
        'store', 'vote_queue', 'deactivate_queue', 'period', 'processed_deactivate_count',
        'msg_end_idx', 'state_salt', 'state_commitment', 'tally', 'tally_batch_num',
        'batch_number',
    )

    def snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._SNAPSHOT_FIELDS}

    def restore(self, snapshot: dict):
        for name in self._SNAPSHOT_FIELDS:
            setattr(self, name, copy.deepcopy(snapshot[name]))
