"""
Durable JSON snapshots of a coordinator context.

Records are keyed by registration index and deactivation records by
insertion order.  Trees are rebuilt from leaves on load, and message queues
are replayed so their hash chain is recomputed and checked.
"""

import json
import logging
import os
import stat
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

from merkle import LeanTree
from primitives import Keypair, StatusCiphertext

from .context import CoordinatorContext, CostModel, Period, RoundParameters
from .messages import MessageQueue
from .state import DeactivationRecord, StateStore, active_leaf
from .tally import TallyCheckpoint

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class PersistenceError(Exception):
    """Snapshot cannot be written or does not reproduce the saved state"""
    pass


def _status_to_list(status: StatusCiphertext):
    return list(status.fields())


def _status_from_list(values) -> StatusCiphertext:
    return StatusCiphertext((values[0], values[1]), (values[2], values[3]))


def _queue_to_list(queue: MessageQueue):
    return [{'ciphertext': m.ciphertext, 'enc_pub_key': list(m.enc_pub_key)}
            for m in queue.messages]


def context_to_dict(ctx: CoordinatorContext) -> Dict[str, Any]:
    params = asdict(ctx.params)
    params['cost_model'] = ctx.params.cost_model.value
    store = ctx.store

    return {
        'version': FORMAT_VERSION,
        'params': params,
        'coordinator_priv_key': ctx.keypair.priv_key,
        'records': [
            {
                'pub_key': list(r.pub_key),
                'balance': r.balance,
                'nonce': r.nonce,
                'voted': r.voted,
                'status': _status_to_list(r.status),
                'votes': r.vote_tree.leaves(),
            }
            for r in store.records
        ],
        'active_flags': list(store.active_flags),
        'deactivations': [
            {'status': _status_to_list(d.status), 'shared_key_hash': d.shared_key_hash}
            for d in store.deactivations
        ],
        'nullifiers': sorted(store.nullifiers),
        'vote_messages': _queue_to_list(ctx.vote_queue),
        'deactivate_messages': _queue_to_list(ctx.deactivate_queue),
        'period': ctx.period.name,
        'processed_deactivate_count': ctx.processed_deactivate_count,
        'msg_end_idx': ctx.msg_end_idx,
        'state_salt': ctx.state_salt,
        'state_commitment': ctx.state_commitment,
        'tally_history': [
            {'totals': list(c.totals), 'salt': c.salt, 'commitment': c.commitment}
            for c in ctx.tally.history
        ],
        'tally_batch_num': ctx.tally_batch_num,
        'batch_number': ctx.batch_number,
        'roots': {
            'state': store.state_root,
            'active': store.active_root,
            'deactivate': store.deactivate_root,
        },
    }


def _rebuild_store(data: Dict[str, Any], params: RoundParameters) -> StateStore:
    store = StateStore(params.state_tree_depth, params.vote_option_tree_depth)

    for entry in data['records']:
        record = store.empty_record()
        record.pub_key = tuple(entry['pub_key'])
        record.balance = entry['balance']
        record.nonce = entry['nonce']
        record.voted = entry['voted']
        record.status = _status_from_list(entry['status'])
        record.vote_tree.init_leaves(entry['votes'])
        store.records.append(record)

    store.active_flags = list(data['active_flags'])
    store.state_tree.init_leaves([r.leaf_hash() for r in store.records])
    # Markers grow with processing order, which is the shadow tree insertion order
    deactivated = sorted((flag, i) for i, flag in enumerate(store.active_flags) if flag)
    store.active_tree = LeanTree(active_leaf(i, flag) for flag, i in deactivated)

    for i, entry in enumerate(data['deactivations']):
        record = DeactivationRecord(_status_from_list(entry['status']), entry['shared_key_hash'])
        store.deactivations.append(record)
        store._deactivation_index[record.shared_key_hash] = i
    store.deactivate_tree.init_leaves([d.leaf_hash() for d in store.deactivations])

    store.nullifiers = set(data['nullifiers'])
    return store


def _replay_queue(entries, coord_priv_key: int) -> MessageQueue:
    queue = MessageQueue()
    for entry in entries:
        queue.push(entry['ciphertext'], tuple(entry['enc_pub_key']), coord_priv_key)
    return queue


def context_from_dict(data: Dict[str, Any]) -> CoordinatorContext:
    if data.get('version') != FORMAT_VERSION:
        raise PersistenceError(f"Unsupported snapshot version: {data.get('version')}")

    params_data = dict(data['params'])
    params_data['cost_model'] = CostModel(params_data['cost_model'])
    params = RoundParameters(**params_data)

    ctx = CoordinatorContext(params, Keypair(data['coordinator_priv_key']))
    ctx.store = _rebuild_store(data, params)
    ctx.vote_queue = _replay_queue(data['vote_messages'], ctx.keypair.priv_key)
    ctx.deactivate_queue = _replay_queue(data['deactivate_messages'], ctx.keypair.priv_key)

    ctx.period = Period[data['period']]
    ctx.processed_deactivate_count = data['processed_deactivate_count']
    ctx.msg_end_idx = data['msg_end_idx']
    ctx.state_salt = data['state_salt']
    ctx.state_commitment = data['state_commitment']
    ctx.tally.history = [
        TallyCheckpoint(tuple(c['totals']), c['salt'], c['commitment'])
        for c in data['tally_history']
    ]
    ctx.tally.last = ctx.tally.history[-1]
    ctx.tally_batch_num = data['tally_batch_num']
    ctx.batch_number = data['batch_number']

    roots = data['roots']
    rebuilt = {
        'state': ctx.store.state_root,
        'active': ctx.store.active_root,
        'deactivate': ctx.store.deactivate_root,
    }
    for name, root in roots.items():
        if rebuilt[name] != root:
            raise PersistenceError(f"Rebuilt {name} root {rebuilt[name]} does not match saved {root}")
    return ctx


def save_context(ctx: CoordinatorContext, path: Path):
    """Atomically write a snapshot readable only by the owner"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, 'w') as f:
        json.dump(context_to_dict(ctx), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    logger.info(f"Saved coordinator state to {path}")


def load_context(path: Path) -> CoordinatorContext:
    with open(path, 'r') as f:
        data = json.load(f)
    ctx = context_from_dict(data)
    logger.info(f"Loaded coordinator state from {path} (batch {ctx.batch_number})")
    return ctx
