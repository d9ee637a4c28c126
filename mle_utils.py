#!/usr/bin/env python3
"""
mle_utils.py

MLE fitting for the spatial Gompertz model: count-table preparation, parameter
specs (free / const), bounded L-BFGS-B on the Laplace objective, multi-start,
and a Runner that writes everything under out/<out_folder>/.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import time

from pyproj import Transformer
from scipy.optimize import minimize
from scipy.spatial import cKDTree

from skfem import MeshTri

from spde_utils import SPDEMatrices, build_spde_matrices, load_mesh_km_from_msh, mesh_vertices_km
from obs_utils import ObservationModel, observation_model
from gompertz_utils import GompertzData
from laplace_utils import GompertzObjective, ParameterLayout, SDReport, sdreport
from sim_utils import simulate_gompertz


# =============================================================================
# Helpers: timing, projections
# =============================================================================

@contextmanager
def timed(label: str):
    t0 = time.perf_counter()
    try:
        yield
    finally:
        dt = time.perf_counter() - t0
        print(f"[TIMER] {label}: {dt:.3f} s")


def lonlat_to_km(lon: np.ndarray, lat: np.ndarray, epsg_project: int = 5070) -> Tuple[np.ndarray, np.ndarray]:
    """Project lon/lat -> EPSG:<epsg_project> meters -> km."""
    tr = Transformer.from_crs("EPSG:4326", f"EPSG:{epsg_project}", always_xy=True)
    x_m, y_m = tr.transform(np.asarray(lon, float), np.asarray(lat, float))
    return np.asarray(x_m, float) / 1000.0, np.asarray(y_m, float) / 1000.0


def assign_vertices(x_km: np.ndarray, y_km: np.ndarray, mesh_xy: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Nearest mesh vertex for each point.

    Returns:
        vertex: int64 (K,)
        dist_km: float (K,)
    """
    pts = np.column_stack([np.asarray(x_km, float), np.asarray(y_km, float)])
    if not np.all(np.isfinite(pts)):
        raise ValueError("Site coordinates must be finite.")
    tree = cKDTree(np.asarray(mesh_xy, float))
    dist, idx = tree.query(pts, k=1)
    return np.asarray(idx, dtype=np.int64), np.asarray(dist, dtype=float)


# =============================================================================
# Progress helper (per-process safe; prints can interleave across processes)
# =============================================================================

@dataclass
class ProgressTracker:
    total: int
    freq: Optional[int] = None      # print every freq evaluations; if None or <=0 -> no prints
    printer: Optional[Callable[[str], None]] = None
    count: int = 0

    def tick(self, n: int = 1) -> None:
        self.count += int(n)

        if self.freq is None or self.freq <= 0 or self.printer is None:
            return

        if (self.count % self.freq) == 0 or self.count >= self.total:
            c = min(self.count, self.total)
            self.printer(f"{c} / {self.total} objective evaluations")


# =============================================================================
# Count data
# =============================================================================

@dataclass
class CountRecords:
    data: GompertzData
    table: pd.DataFrame   # one row per record, in record order (site, year, vertex, t, count)
    first_year: int
    years: np.ndarray


def prepare_counts(
    df: pd.DataFrame,
    spde: SPDEMatrices,
    mesh_xy: Optional[np.ndarray] = None,
    obs_model: Union[int, str, ObservationModel] = 0,
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    check_order: bool = True,
) -> CountRecords:
    """
    Turn a long count table into model records.

    Columns: site, year, count and either x, y (km; snapped to the nearest
    mesh vertex) or vertex. Every site gets every year between the first and
    last observed year (missing counts are NaN); duplicate site-years are
    summed. Records are ordered by (vertex, site, year) so that each record
    with t > 0 directly follows the same site's previous year.
    """
    missing = {"site", "year", "count"} - set(df.columns)
    if missing:
        raise ValueError(f"Count table is missing columns: {sorted(missing)}")
    has_vertex = "vertex" in df.columns
    if not has_vertex and not {"x", "y"} <= set(df.columns):
        raise ValueError("Count table needs either a 'vertex' column or 'x' and 'y' columns.")
    if not has_vertex and mesh_xy is None:
        raise ValueError("mesh_xy is required to snap x/y to mesh vertices.")

    df = df.dropna(subset=["site", "year"]).copy()
    year = df["year"].to_numpy(float)
    if not np.all(np.equal(np.mod(year, 1.0), 0.0)):
        raise ValueError("year must hold integers")
    df["year"] = year.astype(np.int64)

    if min_year is not None:
        df = df[df["year"] >= int(min_year)].copy()
    if max_year is not None:
        df = df[df["year"] <= int(max_year)].copy()
    if df.empty:
        raise ValueError("No count records left after filtering.")

    if has_vertex:
        site_vertex = df.groupby("site", sort=True)["vertex"].first().astype(np.int64)
    else:
        site_xy = df.groupby("site", sort=True)[["x", "y"]].first()
        vertex, _ = assign_vertices(site_xy["x"].to_numpy(), site_xy["y"].to_numpy(), mesh_xy)
        site_vertex = pd.Series(vertex, index=site_xy.index)

    first_year = int(df["year"].min())
    years = np.arange(first_year, int(df["year"].max()) + 1, dtype=np.int64)

    counts = df.groupby(["site", "year"])["count"].sum(min_count=1)
    full_index = pd.MultiIndex.from_product([site_vertex.index, years], names=["site", "year"])
    table = counts.reindex(full_index).reset_index()
    table["vertex"] = table["site"].map(site_vertex).astype(np.int64)
    table["t"] = table["year"] - first_year
    table = table.sort_values(["vertex", "site", "year"], kind="mergesort").reset_index(drop=True)
    table = table[["site", "year", "vertex", "t", "count"]]

    data = GompertzData(
        x_s=table["vertex"].to_numpy(),
        c_i=table["count"].to_numpy(float),
        t_i=table["t"].to_numpy(),
        X_xp=np.ones((spde.n_x, 1)),
        spde=spde,
        n_t=int(years.size),
        obs_model=observation_model(obs_model),
        check_order=check_order,
    )
    return CountRecords(data=data, table=table, first_year=first_year, years=years)


def load_counts_csv(
    csv_path: Path,
    spde: SPDEMatrices,
    mesh_xy: Optional[np.ndarray] = None,
    obs_model: Union[int, str, ObservationModel] = 0,
    epsg_project: int = 5070,
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
) -> CountRecords:
    """
    Read a count CSV. Coordinates may be given as x, y (km) or as
    longitude, latitude (projected with lonlat_to_km).
    """
    df = pd.read_csv(csv_path)

    if not {"x", "y"} <= set(df.columns) and {"longitude", "latitude"} <= set(df.columns):
        df = df.dropna(subset=["longitude", "latitude"]).copy()
        df["x"], df["y"] = lonlat_to_km(
            df["longitude"].to_numpy(float), df["latitude"].to_numpy(float), epsg_project=epsg_project
        )

    return prepare_counts(df, spde, mesh_xy=mesh_xy, obs_model=obs_model, min_year=min_year, max_year=max_year)


# =============================================================================
# Parameter specs
# =============================================================================

DEFAULT_BOUND = 1000.0
RHO_BOUND = 0.999


@dataclass
class ParamSpec:
    name: str
    kind: str   # "free", "const"
    lo: float
    hi: float

    def __post_init__(self):
        self.lo = float(self.lo)
        self.hi = float(self.hi)
        if self.kind not in ("free", "const"):
            raise ValueError(f"ParamSpec.kind must be one of free/const, got {self.kind}")
        if self.hi < self.lo:
            raise ValueError(f"{self.name}: hi < lo ({self.hi} < {self.lo})")
        if self.kind == "const":
            # enforce exact const behavior
            self.hi = self.lo


def default_spec(name: str) -> ParamSpec:
    if name == "rho":
        return ParamSpec("rho", "free", -RHO_BOUND, RHO_BOUND)
    return ParamSpec(name, "free", -DEFAULT_BOUND, DEFAULT_BOUND)


def specs_from_config(model_params: Dict[str, Tuple[str, float, float]]) -> List[ParamSpec]:
    specs: List[ParamSpec] = []
    for name, triple in model_params.items():
        if not (isinstance(triple, (tuple, list)) and len(triple) == 3):
            raise ValueError(f"model_params[{name}] must be a 3-tuple (kind, lo, hi), got {triple}")
        kind, lo, hi = triple
        specs.append(ParamSpec(str(name), str(kind), float(lo), float(hi)))
    return specs


def apply_specs(
    layout: ParameterLayout,
    specs: Optional[List[ParamSpec]],
    par: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Expand per-name specs to the flat fixed vector (a spec applies to every
    entry of a vector parameter).

    Returns:
        free (bool), lower, upper, par (const entries set, free entries clipped)
    """
    by_name = {s.name: s for s in (specs or [])}
    unknown = set(by_name) - set(layout.fixed_names)
    if unknown:
        raise ValueError(f"Specs for unknown fixed parameters: {sorted(unknown)}")

    par = np.array(par, dtype=float, copy=True)
    n = par.size
    free = np.ones(n, dtype=bool)
    lower = np.empty(n)
    upper = np.empty(n)
    for i, name in enumerate(layout.fixed_labels):
        s = by_name.get(name) or default_spec(name)
        lower[i], upper[i] = s.lo, s.hi
        if s.kind == "const":
            free[i] = False
            par[i] = s.lo
        else:
            par[i] = float(np.clip(par[i], s.lo, s.hi))
    return free, lower, upper, par


# =============================================================================
# Fitting
# =============================================================================

@dataclass
class OptimConfig:
    maxiter: int = 800
    ftol: float = 1e-12
    gtol: float = 1e-8
    reject_value: float = 1e10
    run_sdreport: bool = True


@dataclass
class FitResult:
    par: np.ndarray
    nll: float
    labels: List[str]
    free: np.ndarray
    converged: bool
    message: str
    n_iter: int
    n_eval: int
    max_grad: float
    params: Dict[str, np.ndarray] = field(default_factory=dict)
    history: List[float] = field(default_factory=list)
    sd: Optional[SDReport] = None


def _fmt_par_compact(labels: List[str], par: np.ndarray) -> str:
    return " ".join([f"{k}={v:.6g}" for k, v in zip(labels, np.asarray(par, float))])


def fit_mle(
    obj: GompertzObjective,
    specs: Optional[List[ParamSpec]] = None,
    par0: Optional[np.ndarray] = None,
    optim_cfg: Optional[OptimConfig] = None,
    progress: Optional[Callable[[int], None]] = None,
) -> FitResult:
    """
    Minimise obj.fn over the free fixed parameters with L-BFGS-B.

    Trial points with a non-finite objective are rejected by returning
    optim_cfg.reject_value with a zero gradient.
    """
    cfg = optim_cfg or OptimConfig()
    layout = obj.layout
    free, lower, upper, base = apply_specs(layout, specs, obj.par if par0 is None else par0)
    history: List[float] = []

    def fun(z: np.ndarray) -> Tuple[float, np.ndarray]:
        full = base.copy()
        full[free] = z
        val, g = obj.fn_gr(full)
        if progress is not None:
            progress(1)
        if not np.isfinite(val) or not np.all(np.isfinite(g)):
            return float(cfg.reject_value), np.zeros(z.size)
        history.append(float(val))
        return float(val), np.asarray(g, float)[free]

    if np.any(free):
        res = minimize(
            fun,
            base[free],
            jac=True,
            method="L-BFGS-B",
            bounds=list(zip(lower[free], upper[free])),
            options=dict(maxiter=int(cfg.maxiter), ftol=float(cfg.ftol), gtol=float(cfg.gtol)),
        )
        par = base.copy()
        par[free] = res.x
        success, message, n_iter, n_eval = bool(res.success), str(res.message), int(res.nit), int(res.nfev)
    else:
        par = base
        success, message, n_iter, n_eval = True, "no free parameters", 0, 0

    nll, g = obj.fn_gr(par)
    g_free = np.asarray(g, float)[free]
    max_grad = float(np.max(np.abs(g_free), initial=0.0)) if np.all(np.isfinite(g_free)) else float("nan")

    return FitResult(
        par=par,
        nll=float(nll),
        labels=layout.fixed_labels,
        free=free,
        converged=bool(success and np.isfinite(nll)),
        message=message,
        n_iter=n_iter,
        n_eval=n_eval,
        max_grad=max_grad,
        params={n: np.asarray(par[sl]) for n, sl in layout.fixed_slices.items()},
        history=history,
    )


# =============================================================================
# Multi-start
# =============================================================================

@dataclass
class MultiStartConfig:
    # number of starts; the first one is the initial parameter vector itself
    n_starts: int = 1

    # RNG seed for the random starts
    seed: int = 0

    # uniform sampling ranges per fixed parameter name; unnamed parameters keep their initial value
    start_ranges: Optional[Dict[str, Tuple[float, float]]] = None

    # save all finished starts in a CSV-file
    save_dir: Optional[Path] = None
    save_prefix: str = "multistart"


def _uniform(rng: np.random.Generator, low: float, high: float) -> float:
    return float(rng.uniform(float(low), float(high)))


def sample_start(
    rng: np.random.Generator,
    layout: ParameterLayout,
    par: np.ndarray,
    free: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    start_ranges: Optional[Dict[str, Tuple[float, float]]] = None,
) -> np.ndarray:
    out = np.array(par, dtype=float, copy=True)
    for i, name in enumerate(layout.fixed_labels):
        if not free[i] or not start_ranges or name not in start_ranges:
            continue
        lo, hi = map(float, start_ranges[name])
        if hi < lo:
            raise ValueError(f"Sampling bounds hi < lo for {name}: {hi} < {lo}")
        out[i] = float(np.clip(_uniform(rng, lo, hi), lower[i], upper[i]))
    return out


def save_candidates_csv(fits: List[FitResult], out_csv: Path) -> None:
    """
    One row per finished start, sorted by ascending nll.
    """
    if not fits:
        return

    rows = []
    for f in sorted(fits, key=lambda r: (not np.isfinite(r.nll), r.nll)):
        row: Dict[str, Any] = {"nll": float(f.nll), "converged": bool(f.converged), "max_grad": float(f.max_grad)}
        for k, (name, v) in enumerate(zip(f.labels, f.par)):
            key = name if f.labels.count(name) == 1 else f"{name}[{f.labels[:k].count(name)}]"
            row[key] = float(v)
        rows.append(row)

    df = pd.DataFrame(rows)
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_csv, index=False)


def multi_start_fit(
    obj: GompertzObjective,
    specs: Optional[List[ParamSpec]] = None,
    ms_cfg: Optional[MultiStartConfig] = None,
    optim_cfg: Optional[OptimConfig] = None,
    progress: Optional[Callable[[int], None]] = None,
    printer: Optional[Callable[[str], None]] = None,
) -> Tuple[FitResult, List[FitResult]]:
    """
    Runs fit_mle from n_starts starting points and returns (best, all).
    """
    ms = ms_cfg or MultiStartConfig()
    rng = np.random.default_rng(ms.seed)
    free, lower, upper, base = apply_specs(obj.layout, specs, obj.par)

    fits: List[FitResult] = []
    n = max(1, int(ms.n_starts))
    for k in range(n):
        par0 = base if k == 0 else sample_start(rng, obj.layout, base, free, lower, upper, ms.start_ranges)
        obj.reset_inner()
        fit = fit_mle(obj, specs=specs, par0=par0, optim_cfg=optim_cfg, progress=progress)
        fits.append(fit)
        if printer is not None:
            printer(f"[MS] start {k + 1}/{n}: nll={fit.nll:.6e} converged={fit.converged} max|g|={fit.max_grad:.3e}")

    if ms.save_dir is not None:
        save_candidates_csv(fits, Path(ms.save_dir) / f"{ms.save_prefix}_starts.csv")

    finite = [f for f in fits if np.isfinite(f.nll)]
    if not finite:
        raise RuntimeError("No start produced a finite objective.")
    best = min(finite, key=lambda f: f.nll)

    # leave the objective's warm start at the best fit
    obj.reset_inner()
    obj.fn_gr(best.par)
    return best, fits


# =============================================================================
# Output
# =============================================================================

def save_fit_csv(fit: FitResult, out_csv: Path) -> None:
    """
    name, value, se, free per fixed parameter, then derived quantities and nll.
    """
    se = fit.sd.se if fit.sd is not None else np.full(fit.par.size, np.nan)
    rows = []
    for k, (name, v, s, fr) in enumerate(zip(fit.labels, fit.par, se, fit.free)):
        key = name if fit.labels.count(name) == 1 else f"{name}[{fit.labels[:k].count(name)}]"
        rows.append(dict(name=key, value=float(v), se=float(s), free=bool(fr)))
    if fit.sd is not None:
        for key, v in fit.sd.derived.items():
            rows.append(dict(name=key, value=float(v), se=float(fit.sd.derived_se[key]), free=False))
    rows.append(dict(name="nll", value=float(fit.nll), se=np.nan, free=False))

    out_csv.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(out_csv, index=False)


def save_report_npz(report: Dict[str, np.ndarray], out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(out_path, **{k: np.asarray(v) for k, v in report.items()})


# =============================================================================
# Runner: load data + run MLE (callable for multiprocessing)
# =============================================================================

class Runner:
    """
    A callable MLE runner with two entrypoints:
      - load_data(): mesh + SPDE matrices + count records (or a simulated dataset)
      - run_MLE(): multi-start L-BFGS-B on the Laplace objective + sdreport,
        saving CSVs/NPZs to out/<out_folder>/...

    Folder layout:
      out/<out_folder>/
        mesh/
        csv/
        report/
    """

    def __init__(
        self,
        out_folder: str,
        *,
        data_params: Dict,
        model_params: Dict[str, Tuple[str, float, float]],
        init_params: Optional[Dict] = None,
        inner_params: Optional[Dict] = None,
        optim_params: Optional[Dict] = None,
        multiStart_params: Optional[Dict] = None,
        sim_params: Optional[Dict] = None,
        simulate: bool = False,
        base_data_dir: Path = Path("data"),
        out_root: Path = Path("out"),
        verbose: bool = False,
        verbose_freq: Optional[int] = None,
    ):
        self.out_folder = str(out_folder)
        self._t0 = time.time()

        self.data_params = dict(data_params)
        self.model_params = dict(model_params)
        self.init_params = dict(init_params or {})
        self.inner_params = dict(inner_params or {})
        self.optim_params = dict(optim_params or {})
        self.multiStart_params = dict(multiStart_params or {})
        self.sim_params = dict(sim_params or {})
        self.simulate = bool(simulate)

        self.base_data_dir = Path(base_data_dir)
        self.out_root = Path(out_root)

        # verbosity settings
        self.verbose = bool(verbose)
        self.verbose_freq = verbose_freq

        # output paths
        self.out_dir = self.out_root / self.out_folder
        self.mesh_dir = self.out_dir / "mesh"
        self.csv_dir = self.out_dir / "csv"
        self.report_dir = self.out_dir / "report"
        self.mesh_dir.mkdir(parents=True, exist_ok=True)
        self.csv_dir.mkdir(parents=True, exist_ok=True)
        self.report_dir.mkdir(parents=True, exist_ok=True)

        # computed later
        self.mesh: Optional[MeshTri] = None
        self.spde: Optional[SPDEMatrices] = None
        self.records: Optional[CountRecords] = None
        self.truth: Optional[Dict[str, np.ndarray]] = None

    # -------------------------
    # Timestamped logging
    # -------------------------
    def _elapsed_hms(self) -> str:
        dt = int(time.time() - self._t0)
        h = dt // 3600
        m = (dt % 3600) // 60
        s = dt % 60
        return f"{h:02d}:{m:02d}:{s:02d}"

    def _log(self, msg: str) -> None:
        print(f"{self.out_folder}@[{self._elapsed_hms()}] ---- {msg}")

    # -------------------------
    # Mesh + structural matrices
    # -------------------------
    def build_spde(self) -> SPDEMatrices:
        """
        Mesh from data_params["msh_path"] (relative to base_data_dir), or a
        regular grid data_params["grid"] = dict(width_km, height_km, n).
        Structural matrices are written to out/<out_folder>/mesh/spde_G*.npz.
        """
        try:
            msh = self.data_params.get("msh_path")
            if msh:
                msh_path = Path(msh)
                if not msh_path.is_absolute():
                    msh_path = self.base_data_dir / msh_path
                self.mesh = load_mesh_km_from_msh(msh_path)
            else:
                grid = dict(self.data_params.get("grid") or {})
                if not grid:
                    raise ValueError("data_params needs either 'msh_path' or 'grid'.")
                n = int(grid.get("n", 5))
                self.mesh = MeshTri.init_tensor(
                    np.linspace(0.0, float(grid["width_km"]), n),
                    np.linspace(0.0, float(grid.get("height_km", grid["width_km"])), n),
                )

            self.spde = build_spde_matrices(self.mesh)
            self.spde.save_npz(self.mesh_dir / "spde.npz")
            return self.spde
        finally:
            self._log("self.build_spde complete")

    # -------------------------
    # Data
    # -------------------------
    def load_data(self) -> GompertzData:
        try:
            if self.spde is None:
                self.build_spde()
            assert self.spde is not None and self.mesh is not None

            mesh_xy = mesh_vertices_km(self.mesh)
            obs_model = self.data_params.get("obs_model", 0)

            if self.simulate:
                sp = self.sim_params
                sim = simulate_gompertz(
                    self.spde,
                    n_t=int(sp["n_t"]),
                    params=dict(sp["true_params"]),
                    obs_model=obs_model,
                    seed=int(sp.get("seed", 0)),
                    mesh_xy=mesh_xy,
                    first_year=int(sp.get("first_year", 0)),
                    p_missing=float(sp.get("p_missing", 0.0)),
                )
                sim.counts.to_csv(self.csv_dir / f"{self.out_folder}_simulated_counts.csv", index=False)
                self.truth = sim.params
                save_report_npz(sim.params, self.report_dir / f"{self.out_folder}_truth.npz")
                self.records = prepare_counts(sim.counts, self.spde, mesh_xy=mesh_xy, obs_model=obs_model)
            else:
                counts_csv = Path(self.data_params["counts_csv"])
                if not counts_csv.is_absolute():
                    counts_csv = self.base_data_dir / counts_csv
                self.records = load_counts_csv(
                    counts_csv,
                    self.spde,
                    mesh_xy=mesh_xy,
                    obs_model=obs_model,
                    epsg_project=int(self.data_params.get("epsg_project", 5070)),
                    min_year=self.data_params.get("min_year"),
                    max_year=self.data_params.get("max_year"),
                )

            self.records.table.to_csv(self.csv_dir / f"{self.out_folder}_records.csv", index=False)
            d = self.records.data
            self._log(f"data: n_i={d.n_i} n_x={d.n_x} n_t={d.n_t} obs_model={d.obs_model.name}")
            return d
        finally:
            self._log("self.load_data complete")

    # -------------------------
    # Run MLE
    # -------------------------
    def run_MLE(self) -> FitResult:
        try:
            data = self.records.data if self.records is not None else self.load_data()

            obj = GompertzObjective(
                data,
                parameters={k: np.asarray(v, dtype=float) for k, v in self.init_params.items()},
                random=True,
                inner_params=self.inner_params,
                printer=self._log if self.verbose else None,
            )
            specs = specs_from_config(self.model_params)

            optim_cfg = OptimConfig(**self.optim_params)
            ms_cfg = MultiStartConfig(
                n_starts=int(self.multiStart_params.get("n_starts", 1)),
                seed=int(self.multiStart_params.get("seed", 0)),
                start_ranges=self.multiStart_params.get("start_ranges"),
                save_dir=self.csv_dir,
                save_prefix=self.out_folder,
            )

            tracker = ProgressTracker(
                total=int(ms_cfg.n_starts) * int(optim_cfg.maxiter),
                freq=self.verbose_freq,
                printer=lambda s: self._log(s),
            )
            progress_cb = tracker.tick if (self.verbose_freq is not None and self.verbose_freq > 0) else None

            with timed(f"{self.out_folder} multi-start fit"):
                best, _ = multi_start_fit(
                    obj, specs=specs, ms_cfg=ms_cfg, optim_cfg=optim_cfg,
                    progress=progress_cb, printer=self._log,
                )
            self._log(f"best nll={best.nll:.6e} {_fmt_par_compact(best.labels, best.par)}")

            if optim_cfg.run_sdreport:
                with timed(f"{self.out_folder} sdreport"):
                    best.sd = sdreport(obj, best.par, free=best.free)
                if not best.sd.pd_hess:
                    self._log("Hessian at the optimum is not positive definite")

            save_fit_csv(best, self.csv_dir / f"{self.out_folder}_fit.csv")
            save_report_npz(obj.report(best.par), self.report_dir / f"{self.out_folder}_report.npz")
            return best
        finally:
            self._log("self.run_MLE complete")
