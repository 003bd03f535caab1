"""Pack/unpack latency benchmark for the batched speculative buffers.

Drives synthetic steps (random drafts, greedy acceptance against random
targets) and reports per-phase host latency.

Usage:
    python benchmarks/bench_speculative_buffers.py --mode medusa \
        --max-num-sequences 64 --max-tokens-per-step 8 --steps 200
    python benchmarks/bench_speculative_buffers.py --mode lookahead_decoding --device cpu
"""

from __future__ import annotations

import argparse
import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch
from torch import Tensor

from specbatch.config import DecodingConfig
from specbatch.decoding.buffers import SpeculativeDecodingBuffers
from specbatch.decoding.state import DecodingState, SlotState
from specbatch.decoding.verify import build_step_result

REPORTS_DIR = Path(__file__).parent / "reports"


# ---------------------------------------------------------------------------
# Statistics helpers
# ---------------------------------------------------------------------------


def percentile(values: list[float], p: float) -> float:
    """Compute the p-th percentile (0-100) using linear interpolation."""
    if not values:
        return 0.0
    sorted_v = sorted(values)
    k = (len(sorted_v) - 1) * (p / 100.0)
    f = int(k)
    c = f + 1
    if c >= len(sorted_v):
        return sorted_v[f]
    return sorted_v[f] + (k - f) * (sorted_v[c] - sorted_v[f])


@dataclass
class BenchReport:
    """Latency summary for one benchmark run."""

    mode: str
    device: str
    max_num_sequences: int
    max_tokens_per_step: int
    steps: int
    pack_p50_ms: float
    pack_p99_ms: float
    verify_p50_ms: float
    unpack_p50_ms: float
    unpack_p99_ms: float
    mean_tokens_per_step: float
    reserved_bytes: int


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _fill_batch(buffers: SpeculativeDecodingBuffers, prompt_len: int, vocab: int) -> None:
    while buffers.arena.free_slot_count():
        prompt = torch.randint(0, vocab, (prompt_len,)).tolist()
        buffers.add_sequence(DecodingState.from_prompt(prompt))


def _propose_all(buffers: SpeculativeDecodingBuffers, vocab: int, match_rate: float) -> Tensor:
    """Propose random drafts and return target tokens agreeing at ``match_rate``."""
    n, t = buffers.max_num_sequences, max(buffers.max_tokens_per_step, 1)
    targets = torch.randint(0, vocab, (n, t))
    for slot, state in buffers.arena:
        if state.state is not SlotState.COMMITTED and state.state is not SlotState.EMPTY:
            continue
        k = buffers.max_tokens_per_step
        tree = buffers.tree
        if tree is not None:
            k = tree.num_nodes
        drafts = torch.randint(0, vocab, (k,))
        agree = torch.rand(k) < match_rate
        targets[slot, :k] = torch.where(agree, drafts, targets[slot, :k])
        state.propose(drafts)
    return targets


def run(config: DecodingConfig, steps: int, prompt_len: int, match_rate: float) -> BenchReport:
    buffers = SpeculativeDecodingBuffers.from_config(config)
    vocab = config.vocab_size or 32000
    _fill_batch(buffers, prompt_len, vocab)

    pack_ms: list[float] = []
    verify_ms: list[float] = []
    unpack_ms: list[float] = []
    committed_tokens = 0
    for _ in range(steps):
        targets = _propose_all(buffers, vocab, match_rate)

        t0 = time.perf_counter()
        step = buffers.pack()
        step.event.wait()
        t1 = time.perf_counter()
        result = build_step_result(buffers, targets)
        t2 = time.perf_counter()
        committed = buffers.unpack(step, result)
        t3 = time.perf_counter()

        pack_ms.append((t1 - t0) * 1000)
        verify_ms.append((t2 - t1) * 1000)
        unpack_ms.append((t3 - t2) * 1000)
        committed_tokens += sum(len(v) for v in committed.values())

    return BenchReport(
        mode=config.mode,
        device=config.device,
        max_num_sequences=config.max_num_sequences,
        max_tokens_per_step=config.max_tokens_per_step,
        steps=steps,
        pack_p50_ms=round(percentile(pack_ms, 50), 3),
        pack_p99_ms=round(percentile(pack_ms, 99), 3),
        verify_p50_ms=round(percentile(verify_ms, 50), 3),
        unpack_p50_ms=round(percentile(unpack_ms, 50), 3),
        unpack_p99_ms=round(percentile(unpack_ms, 99), 3),
        mean_tokens_per_step=committed_tokens / max(steps * config.max_num_sequences, 1),
        reserved_bytes=buffers.buffer_manager.reserved_bytes,
    )


def print_report(report: BenchReport) -> None:
    print()
    print("=== Speculative Buffer Benchmark ===")
    print(f"Mode:               {report.mode}")
    print(f"Device:             {report.device}")
    print(f"Slots x tokens:     {report.max_num_sequences} x {report.max_tokens_per_step}")
    print(f"Steps:              {report.steps}")
    print()
    print(f"Pack   P50 / P99:   {report.pack_p50_ms:.3f} / {report.pack_p99_ms:.3f} ms")
    print(f"Verify P50:         {report.verify_p50_ms:.3f} ms")
    print(f"Unpack P50 / P99:   {report.unpack_p50_ms:.3f} / {report.unpack_p99_ms:.3f} ms")
    print(f"Tokens/step/slot:   {report.mean_tokens_per_step:.2f}")
    print(f"Reserved memory:    {report.reserved_bytes / 1024:.1f} KiB")
    print()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Speculative buffer pack/unpack benchmark")
    parser.add_argument("--mode", default="medusa", help="Speculative decoding mode")
    parser.add_argument("--max-num-sequences", type=int, default=32)
    parser.add_argument("--max-tokens-per-step", type=int, default=8)
    parser.add_argument("--steps", type=int, default=100)
    parser.add_argument("--prompt-len", type=int, default=128)
    parser.add_argument(
        "--match-rate",
        type=float,
        default=0.7,
        help="Probability that a draft token agrees with the target",
    )
    parser.add_argument(
        "--device",
        default="cuda" if torch.cuda.is_available() else "cpu",
    )
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--save", action="store_true", help="Write a JSON report to reports/")
    args = parser.parse_args()

    torch.manual_seed(args.seed)
    config = DecodingConfig(
        mode=args.mode,
        max_num_sequences=args.max_num_sequences,
        max_tokens_per_step=args.max_tokens_per_step,
        device=args.device,
    )
    report = run(config, args.steps, args.prompt_len, args.match_rate)
    print_report(report)

    if args.save:
        REPORTS_DIR.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        path = REPORTS_DIR / f"spec_buffers_{report.mode}_{stamp}.json"
        payload = {**asdict(report), "pytorch_version": torch.__version__}
        path.write_text(json.dumps(payload, indent=2) + "\n")
        print(f"Report saved to {path}")


if __name__ == "__main__":
    main()
