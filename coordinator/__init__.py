"""
Round coordinator: state store, command processing, commitment chain and
anonymous reactivation
"""

from .errors import (
    CommandRejection,
    CommitmentMismatch,
    CoordinatorError,
    LedgerRejection,
    NullifierAlreadyUsed,
    PeriodError,
    ReactivationError,
    RejectionReason,
)
from .messages import (
    Command,
    Message,
    MessageDecodeError,
    MessageQueue,
    batch_gen_messages,
    build_deactivate_message,
    build_message,
    decrypt_command,
    encrypt_command,
)
from .state import DeactivationRecord, StateStore, UserRecord
from .tally import CommitmentChain, TallyCheckpoint
from .context import CoordinatorContext, CostModel, Period, RoundParameters
from .processor import (
    PUBLIC_INPUT_ORDER,
    BatchKind,
    BatchTranscript,
    CommandOutcome,
    CommandProcessor,
    pack_input_hash,
)
from .reactivation import (
    ReactivationPolicy,
    ReactivationProtocol,
    ReactivationRequest,
    build_reactivation_request,
    reactivation_public_inputs,
)
from .persistence import PersistenceError, load_context, save_context

__version__ = "1.0.0"

__all__ = [
    # Errors
    'CommandRejection',
    'CommitmentMismatch',
    'CoordinatorError',
    'LedgerRejection',
    'NullifierAlreadyUsed',
    'PeriodError',
    'ReactivationError',
    'RejectionReason',

    # Messages
    'Command',
    'Message',
    'MessageDecodeError',
    'MessageQueue',
    'batch_gen_messages',
    'build_deactivate_message',
    'build_message',
    'decrypt_command',
    'encrypt_command',

    # State
    'DeactivationRecord',
    'StateStore',
    'UserRecord',
    'CommitmentChain',
    'TallyCheckpoint',
    'CoordinatorContext',
    'CostModel',
    'Period',
    'RoundParameters',

    # Processing
    'PUBLIC_INPUT_ORDER',
    'BatchKind',
    'BatchTranscript',
    'CommandOutcome',
    'CommandProcessor',
    'pack_input_hash',

    # Reactivation
    'ReactivationPolicy',
    'ReactivationProtocol',
    'ReactivationRequest',
    'build_reactivation_request',
    'reactivation_public_inputs',

    # Persistence
    'PersistenceError',
    'load_context',
    'save_context',
]
