#!/usr/bin/env python3
"""
run_mle_parallel.py

Run multiple independent spatial Gompertz MLE fits in parallel.

- Spawns N worker processes (default: os.cpu_count()).
- Each worker runs the same Runner config but with out_folder:
    <prefix>1, <prefix>2, ..., <prefix>N
- Uses "spawn" start method (Windows-safe; JAX is not fork-safe).
- With --simulate every worker fits its own simulated replicate
  (sim seed = seed_base + idx), which gives a parameter-recovery study.

Config logic:
- Base defaults come from configs.default
- Optional --config NAME overlays only keys provided in configs.NAME
  (section by section: data_params, init_params, ... are merged shallowly)

Usage:
    python run_mle_parallel.py --config POISSON --n 4
    python run_mle_parallel.py --prefix sim_run --config SMALL_SIM --simulate --n 8
    python run_mle_parallel.py --prefix pln_run --config PLN --simulate
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Any, Dict, List, Tuple, Optional

import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor, as_completed

from mle_utils import Runner, _fmt_par_compact


SECTIONS = (
    "data_params",
    "init_params",
    "inner_params",
    "optim_params",
    "multiStart_params",
    "sim_params",
)


# -----------------------------
# Small merge helpers
# -----------------------------

def merge_nested_dict(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = dict(base)
    if override:
        out.update(dict(override))
    return out


def load_named_config(name: str) -> Dict[str, Any]:
    """
    Loads configs.<name> from configs.py. Supports 'default' and any dict-valued config.
    """
    import configs  # local file

    if not hasattr(configs, name):
        available = [
            k for k in dir(configs)
            if not k.startswith("_") and isinstance(getattr(configs, k), dict)
        ]
        raise ValueError(f"Unknown --config {name!r}. Available: {available}")

    cfg = getattr(configs, name)
    if not isinstance(cfg, dict):
        raise ValueError(f"configs.{name} is not a dict.")
    return dict(cfg)


def make_base_runner_kwargs_from_configs_default() -> Dict[str, Any]:
    """
    Build Runner kwargs from configs.default.
    Runner expects:
        data_params, model_params (ParamSpec triples), init_params, inner_params,
        optim_params, multiStart_params, sim_params, verbose, verbose_freq.
    """
    d = load_named_config("default")

    mle_model_params = d.get("mle_model_params", None)
    if mle_model_params is None or not isinstance(mle_model_params, dict):
        raise RuntimeError("configs.default must contain a dict `mle_model_params`.")

    out: Dict[str, Any] = {k: dict(d.get(k) or {}) for k in SECTIONS}
    out["model_params"] = dict(mle_model_params)
    out["verbose"] = bool(d.get("verbose", False))
    out["verbose_freq"] = int(d.get("verbose_freq", 50))
    if "out_root" in d:
        out["out_root"] = d["out_root"]
    return out


def apply_config_overrides(base_kwargs: Dict[str, Any], cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay cfg on top of base_kwargs.

    - SECTIONS merged as nested dicts (one level).
    - cfg['mle_model_params'] overrides base_kwargs['model_params'].
    - top-level flags overwritten if present.
    """
    out = dict(base_kwargs)

    for k in SECTIONS:
        out[k] = merge_nested_dict(out.get(k, {}), cfg.get(k))

    for k in ["verbose", "verbose_freq", "out_root"]:
        if k in cfg:
            out[k] = cfg[k]

    if "mle_model_params" in cfg:
        out["model_params"] = dict(cfg["mle_model_params"])

    return out


# -----------------------------
# Worker
# -----------------------------

def _worker_run_one(
    idx: int,
    out_folder: str,
    base_kwargs: Dict[str, Any],
    seed_base: int = 12345,
    simulate: bool = False,
) -> Tuple[str, float, List[str], List[float]]:
    """
    Worker entrypoint (must be top-level for spawn).

    Returns:
        (out_folder, nll, labels, par)
    """
    # Per-run seeds so parallel runs aren't identical
    ms_seed = int(seed_base + 10_000 * idx + 17)
    sim_seed = int(seed_base + idx)

    kwargs = dict(base_kwargs)
    kwargs["multiStart_params"] = dict(kwargs.get("multiStart_params", {}))
    kwargs["sim_params"] = dict(kwargs.get("sim_params", {}))

    kwargs["multiStart_params"]["seed"] = ms_seed
    if simulate:
        kwargs["sim_params"]["seed"] = sim_seed

    runner = Runner(out_folder=out_folder, simulate=simulate, **kwargs)
    runner.load_data()
    res = runner.run_MLE()

    return out_folder, float(res.nll), list(res.labels), [float(v) for v in res.par]


# -----------------------------
# Main
# -----------------------------

def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=0, help="Number of parallel processes (default: os.cpu_count()).")
    ap.add_argument("--prefix", type=str, default="gompertz_run", help="Out folder prefix (default: gompertz_run).")
    ap.add_argument("--config", type=str, default="", help="Optional config name from configs.py (e.g., POISSON, PLN, SMALL_SIM).")
    ap.add_argument("--seed-base", type=int, default=12345, help="Base seed for per-worker seeds.")
    ap.add_argument("--simulate", action="store_true", help="Fit simulated replicates instead of data_params.counts_csv.")
    args = ap.parse_args()

    n_workers = int(args.n) if int(args.n) > 0 else (os.cpu_count() or 1)
    prefix = str(args.prefix).strip()
    config_name = str(args.config).strip()
    seed_base = int(args.seed_base)
    simulate = bool(args.simulate)

    base_kwargs = make_base_runner_kwargs_from_configs_default()
    if config_name:
        base_kwargs = apply_config_overrides(base_kwargs, load_named_config(config_name))

    if not simulate and not base_kwargs["data_params"].get("counts_csv"):
        raise SystemExit("ERROR: No data_params['counts_csv'] specified (use --simulate or a config that sets it).")

    mp.set_start_method("spawn", force=True)

    t0 = time.time()
    mode = "simulated" if simulate else "data"
    print(f"[MAIN] Launching {n_workers} parallel MLE runs: {prefix}1..{prefix}{n_workers} ({mode}, config={config_name or 'default'})")

    results: Dict[str, Tuple[float, List[str], List[float]]] = {}
    failures: Dict[str, str] = {}

    with ProcessPoolExecutor(max_workers=n_workers, mp_context=mp.get_context("spawn")) as ex:
        futs = {}
        for i in range(1, n_workers + 1):
            out_folder = f"{prefix}{i}"
            futs[ex.submit(_worker_run_one, i, out_folder, base_kwargs, seed_base, simulate)] = out_folder

        for fut in as_completed(futs):
            try:
                out_folder, nll, labels, par = fut.result()
                results[out_folder] = (nll, labels, par)
                print(f"[MAIN] {out_folder} DONE: nll={nll:.6e} {_fmt_par_compact(labels, par)}")
            except Exception as e:
                msg = f"{type(e).__name__}: {e}"
                failures[futs[fut]] = msg
                print(f"[MAIN] {futs[fut]} FAILED: {msg}", file=sys.stderr)

    dt = time.time() - t0

    if results:
        best_folder = min(results.keys(), key=lambda k: results[k][0])
        best_nll, best_labels, best_par = results[best_folder]
        print("\n[MAIN] Summary")
        print(f"[MAIN] Elapsed: {dt:.1f} s")
        print(f"[MAIN] Completed: {len(results)}/{n_workers}")
        print(f"[MAIN] Best: {best_folder} nll={best_nll:.6e} {_fmt_par_compact(best_labels, best_par)}")

    if failures:
        print("\n[MAIN] Failures:", file=sys.stderr)
        for k, v in failures.items():
            print(f"  - {k}: {v}", file=sys.stderr)

    return 0 if (len(results) == n_workers and not failures) else 1


if __name__ == "__main__":
    raise SystemExit(main())
