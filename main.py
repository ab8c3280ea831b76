import argparse
import asyncio
import logging
import random
import sys
from pathlib import Path

import yaml

from config import SystemConfig, config_to_dict, load_config, save_config
from coordinator import (
    CoordinatorError,
    build_deactivate_message,
    build_message,
    build_reactivation_request,
)
from integrated_coordinator import create_coordinator
from ledger import LedgerError
from primitives import Keypair
from utils import (
    PerformanceMonitor,
    create_performance_report,
    save_results,
    setup_logging,
    validate_environment,
)
from zk import ZKError

logger = logging.getLogger(__name__)


async def run_demo(config: SystemConfig, num_voters: int, seed: int = 42) -> bool:
    print("=" * 80)
    print("ANONYMOUS VOTING ROUND - COORDINATOR DEMONSTRATION")
    print("   Encrypted status + batch commitments + anonymous reactivation")
    print("=" * 80)

    rng = random.Random(seed)
    monitor = PerformanceMonitor()
    coordinator = create_coordinator(config, monitor=monitor)
    ctx = coordinator.context
    params = ctx.params

    capacity = ctx.store.capacity - ctx.store.num_signups
    if num_voters + 1 > capacity:
        print(f"\nState tree holds {capacity} more users; reduce --voters or raise state_tree_depth")
        return False

    try:
        await coordinator.initialize()

        print(f"\nRegistering {num_voters} voters ({params.voice_credits} credits each)...")
        voters = []
        for _ in range(num_voters):
            keypair = Keypair()
            index = await coordinator.sign_up(keypair.pub_key)
            voters.append((index, keypair))

        print("Publishing votes...")
        for index, keypair in voters:
            option = rng.randrange(params.max_vote_options)
            weight = rng.randint(1, 10)
            ciphertext, enc_pub = build_message(keypair, ctx.coord_pub_key, index, option, weight, 1)
            await coordinator.publish_message(ciphertext, enc_pub)

        # First voter leaves and comes back under a new key
        old_index, old_keypair = voters[0]
        print(f"Voter {old_index} deactivates...")
        ciphertext, enc_pub = build_deactivate_message(old_keypair, ctx.coord_pub_key, old_index)
        await coordinator.publish_deactivate_message(ciphertext, enc_pub)
        await coordinator.process_deactivations()

        new_keypair = Keypair()
        request = build_reactivation_request(
            old_keypair, new_keypair.pub_key, ctx.coord_pub_key,
            ctx.store.deactivations, ctx.store.deactivate_tree_depth)
        proof = await coordinator.prove_reactivation(request)
        new_index = await coordinator.reactivate(request, proof)
        print(f"Voter re-entered anonymously at state leaf {new_index} ({config.policy.value})")

        ciphertext, enc_pub = build_message(new_keypair, ctx.coord_pub_key, new_index, 0, 5, 1)
        await coordinator.publish_message(ciphertext, enc_pub)

        print("\nProcessing and tallying...")
        result = await coordinator.run_round()
    except (CoordinatorError, ZKError, LedgerError) as e:
        print(f"\n Demo failed: {e}")
        logger.exception("Demo failed")
        return False

    print("\n" + "=" * 40)
    print("ROUND RESULTS")
    print("=" * 40)
    for option, votes in enumerate(result.tally):
        print(f"  Option {option}: {votes} votes")
    print(f"\nBatches committed: {result.batches_committed}")
    print(f"Tally commitment: {result.tally_commitment}")
    if result.rejections:
        print("Rejected commands:")
        for reason, count in sorted(result.rejections.items()):
            print(f"  {reason}: {count}")

    config.ensure_directories()
    report_path = config.results_dir / "round_report.json"
    save_results({
        'tally': result.tally,
        'num_signups': result.num_signups,
        'batches_committed': result.batches_committed,
        'tally_commitment': result.tally_commitment,
        'state_commitment': result.state_commitment,
        'rejections': result.rejections,
        'computation_time': result.computation_time,
        'performance': monitor.get_summary(),
    }, report_path)

    perf_path = config.results_dir / "performance_report.txt"
    with open(perf_path, "w") as f:
        f.write(create_performance_report(monitor))
    monitor.save_metrics(config.results_dir / "metrics.json")

    print(f"\nFull results saved to: {report_path}")
    print(f"Performance report: {perf_path}")
    return True


def show_config(config: SystemConfig, output: str = None):
    print(yaml.dump(config_to_dict(config), default_flow_style=False))
    if output:
        save_config(config, Path(output))
        print(f"Configuration written to {output}")


def main():
    parser = argparse.ArgumentParser(
        description='Anonymous voting round coordinator')
    parser.add_argument('--voters', type=int, default=8,
                        help='Number of voters in the demo round')
    parser.add_argument('--seed', type=int, default=42,
                        help='Seed for the demo vote plan')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--output', type=str, default=None,
                        help='Write the effective configuration here (show-config)')
    parser.add_argument('--log-level', type=str, default=None)
    parser.add_argument(
        '--mode', choices=['demo', 'show-config'], default='demo')

    args = parser.parse_args()
    config = load_config(Path(args.config))

    if args.mode == 'show-config':
        show_config(config, args.output)
        return

    config.ensure_directories()
    log_level = args.log_level or ("DEBUG" if config.enable_debug_mode else "INFO")
    setup_logging(log_level, config.log_dir / "coordinator.log")

    issues = validate_environment(config.prover.backend, config.prover.snarkjs_bin)
    for issue in issues:
        logger.error(issue)
    if issues:
        sys.exit(1)

    success = asyncio.run(run_demo(config, args.voters, args.seed))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
