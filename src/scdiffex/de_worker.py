# src/scdiffex/de_worker.py
from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import logsumexp

from .conditions import TAG_A
from .errors import FitError
from .partition import Chunk

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = ["gene", "baseMean", "meanA", "meanB", "pvalue", "foldChange"]

# floor used when a dispersion trend is evaluated at a zero mean
_MIN_MEAN = 1e-8


# -----------------------------------------------------------------------------
# Per-chunk negative binomial test (DESeq-style)
# -----------------------------------------------------------------------------
# Each call is a pure function of (chunk, context):
#   1) median-of-ratios size factors over the chunk's genes (PyDESeq2)
#   2) moment (or Cox-Reid) dispersion estimates per gene
#   3) dispersion-mean trend: parametric Gamma GLM or local lowess (statsmodels)
#   4) final dispersion = max(raw, trend)
#   5) exact two-sided NB test on the per-condition count sums
# Nothing is cached between calls; every fitting object lives inside the call.
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerContext:
    """Read-only arguments shared by every chunk of one DE run."""
    tags: Tuple[str, ...]
    fit_type: str = "local"
    dispersion_method: str = "per-condition"
    min_disp: float = 1e-8
    cell_ids: Tuple[str, ...] = ()

    @property
    def mask_a(self) -> np.ndarray:
        return np.asarray(self.tags) == TAG_A


@dataclass(frozen=True, eq=False)
class DispersionTrend:
    """Fitted dispersion-mean relationship."""
    fit_type: str
    params: Tuple[float, ...] = ()
    knots_x: Optional[np.ndarray] = None  # log means (local fit)
    knots_y: Optional[np.ndarray] = None  # log fitted dispersions (local fit)

    def __call__(self, means) -> np.ndarray:
        q = np.maximum(np.asarray(means, dtype=np.float64), _MIN_MEAN)
        if self.fit_type == "parametric":
            asympt_disp, extra_pois = self.params
            return asympt_disp + extra_pois / q
        return np.exp(np.interp(np.log(q), self.knots_x, self.knots_y))

    def describe(self) -> str:
        if self.fit_type == "parametric":
            return "parametric(asymptDisp=%.4g, extraPois=%.4g)" % self.params
        return "local(n=%d)" % (0 if self.knots_x is None else len(self.knots_x))


# -----------------------------------------------------------------------------
# Size factors
# -----------------------------------------------------------------------------
def estimate_size_factors(counts: np.ndarray) -> np.ndarray:
    """
    Median-of-ratios size factor per cell.

    counts: genes x cells. Genes with a zero in any cell are ignored by the
    estimator; if that leaves nothing, the chunk fails.
    """
    from pydeseq2.preprocessing import deseq2_norm

    _, size_factors = deseq2_norm(np.asarray(counts, dtype=np.float64).T)
    sf = np.asarray(size_factors, dtype=np.float64).ravel()

    if sf.shape[0] != counts.shape[1] or not np.all(np.isfinite(sf)) or np.any(sf <= 0):
        raise FitError(
            "dispersion fit failed: size factors are undefined for this chunk "
            "(every gene has a zero count in at least one cell)."
        )
    return sf


# -----------------------------------------------------------------------------
# Raw dispersion estimates
# -----------------------------------------------------------------------------
def moment_dispersions(normed: np.ndarray, size_factors: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Method-of-moments dispersion within one group of cells.

    disp = (var - xim * mean) / mean^2, xim = mean(1 / size_factors).
    May be negative for under-dispersed genes; the trend takes over there.
    """
    mean = normed.mean(axis=1)
    var = normed.var(axis=1, ddof=1)
    xim = float(np.mean(1.0 / size_factors))
    with np.errstate(divide="ignore", invalid="ignore"):
        disp = (var - xim * mean) / mean ** 2
    return mean, disp


def pooled_moment_dispersions(
    normed: np.ndarray,
    size_factors: np.ndarray,
    mask_a: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Moment dispersion from the within-condition variance pooled over both groups."""
    mean = normed.mean(axis=1)
    ss = np.zeros(normed.shape[0], dtype=np.float64)
    for m in (mask_a, ~mask_a):
        grp = normed[:, m]
        ss += ((grp - grp.mean(axis=1, keepdims=True)) ** 2).sum(axis=1)
    var = ss / float(normed.shape[1] - 2)
    xim = float(np.mean(1.0 / size_factors))
    with np.errstate(divide="ignore", invalid="ignore"):
        disp = (var - xim * mean) / mean ** 2
    return mean, disp


def cox_reid_dispersions(
    counts: np.ndarray,
    mask_a: np.ndarray,
    cell_ids: Sequence[str] = (),
) -> np.ndarray:
    """Cox-Reid adjusted genewise dispersions from a PyDESeq2 fit on ~condition."""
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference

    n_genes, n_cells = counts.shape
    if len(cell_ids) == n_cells:
        index = pd.Index([str(c) for c in cell_ids], name="cell")
    else:
        index = pd.Index([f"cell{i}" for i in range(n_cells)], name="cell")

    metadata = pd.DataFrame(
        {"condition": pd.Categorical(np.where(mask_a, "A", "B"), categories=["B", "A"])},
        index=index,
    )
    frame = pd.DataFrame(
        np.asarray(counts, dtype=np.int64).T,
        index=index,
        columns=pd.Index([f"g{i}" for i in range(n_genes)], name="gene"),
    )

    try:
        dds = DeseqDataSet(
            counts=frame,
            metadata=metadata,
            design="~condition",
            inference=DefaultInference(n_cpus=1),
            quiet=True,
        )
        dds.fit_size_factors()
        dds.fit_genewise_dispersions()
        disps = dds.var["genewise_dispersions"].to_numpy(dtype=np.float64)
    except (KeyError, ValueError, RuntimeError, np.linalg.LinAlgError) as e:
        raise FitError(f"dispersion fit failed: Cox-Reid estimation raised {e!r}") from e

    if disps.shape[0] != n_genes:
        raise FitError(
            f"dispersion fit failed: Cox-Reid returned {disps.shape[0]} estimates for {n_genes} genes."
        )
    return disps


# -----------------------------------------------------------------------------
# Dispersion-mean trend
# -----------------------------------------------------------------------------
def fit_parametric_trend(
    means: np.ndarray,
    disps: np.ndarray,
    *,
    max_iter: int = 10,
) -> DispersionTrend:
    """
    disp = asymptDisp + extraPois / mean, fitted by an iterated Gamma GLM with
    identity link on the genes whose residual ratio lies in (1e-4, 15).
    """
    import statsmodels.api as sm

    family = sm.families.Gamma(link=sm.families.links.Identity())
    coefs = np.array([0.1, 1.0])
    converged = False

    for _ in range(int(max_iter)):
        with np.errstate(divide="ignore", invalid="ignore"):
            residuals = disps / (coefs[0] + coefs[1] / means)
        good = np.isfinite(residuals) & (residuals > 1e-4) & (residuals < 15)
        if int(good.sum()) < 3:
            raise FitError(
                f"dispersion fit failed: only {int(good.sum())} gene(s) usable for the parametric trend."
            )

        exog = np.column_stack([np.ones(int(good.sum())), 1.0 / means[good]])
        try:
            fit = sm.GLM(disps[good], exog, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FitError(f"dispersion fit failed: parametric trend raised {e}") from e

        old = coefs
        coefs = np.asarray(fit.params, dtype=np.float64)
        if not np.all(coefs > 0):
            raise FitError(
                "dispersion fit failed: parametric trend has non-positive coefficients "
                f"({coefs.tolist()}); try fit_type='local' and/or a pooled dispersion method."
            )
        if np.sum(np.log(coefs / old) ** 2) < 1e-6:
            converged = True
            break

    if not converged:
        warnings.warn("Parametric dispersion fit did not converge.", RuntimeWarning)

    return DispersionTrend("parametric", params=(float(coefs[0]), float(coefs[1])))


def fit_local_trend(
    means: np.ndarray,
    disps: np.ndarray,
    *,
    min_disp: float = 1e-8,
) -> DispersionTrend:
    """Lowess of log dispersion on log mean, over genes with disp >= 10 * min_disp."""
    from statsmodels.nonparametric.smoothers_lowess import lowess

    use = np.isfinite(disps) & np.isfinite(means) & (means > 0) & (disps >= 10.0 * float(min_disp))
    n = int(use.sum())
    if n < 3:
        raise FitError(
            f"dispersion fit failed: only {n} gene(s) with positive dispersion for the local trend."
        )

    x = np.log(means[use])
    y = np.log(disps[use])
    frac = 1.0 if n < 10 else 2.0 / 3.0
    fitted = lowess(y, x, frac=frac, it=0, return_sorted=True)
    knots_x = np.asarray(fitted[:, 0], dtype=np.float64)
    knots_y = np.asarray(fitted[:, 1], dtype=np.float64)

    if not np.all(np.isfinite(knots_y)):
        raise FitError("dispersion fit failed: local trend is not finite.")
    return DispersionTrend("local", knots_x=knots_x, knots_y=knots_y)


def fit_dispersion_trend(
    means: np.ndarray,
    disps: np.ndarray,
    *,
    fit_type: str = "local",
    min_disp: float = 1e-8,
) -> DispersionTrend:
    if fit_type == "parametric":
        return fit_parametric_trend(means, disps)
    if fit_type == "local":
        return fit_local_trend(means, disps, min_disp=min_disp)
    raise ValueError(f"Unknown fit_type: {fit_type!r}")


def _share_max(raw: np.ndarray, fitted: np.ndarray, min_disp: float) -> np.ndarray:
    # NaN raw estimates fall back to the trend
    return np.maximum(np.fmax(raw, fitted), float(min_disp))


def _check_replicates(mask_a: np.ndarray, method: str) -> None:
    n_a = int(mask_a.sum())
    n_b = int((~mask_a).sum())
    if method == "blind":
        if n_a + n_b < 2:
            raise FitError("dispersion fit failed: at least 2 cells are required.")
        return
    if min(n_a, n_b) < 2:
        raise FitError(
            f"dispersion fit failed: dispersion_method={method!r} needs at least 2 cells per "
            f"condition (A={n_a}, B={n_b}); use dispersion_method='blind' for unreplicated comparisons."
        )


def estimate_dispersions(
    counts: np.ndarray,
    normed: np.ndarray,
    size_factors: np.ndarray,
    mask_a: np.ndarray,
    *,
    method: str = "per-condition",
    fit_type: str = "local",
    min_disp: float = 1e-8,
    cell_ids: Sequence[str] = (),
) -> Tuple[np.ndarray, np.ndarray, str]:
    """
    Final per-gene dispersions used by the test for group A and group B.

    Only 'per-condition' produces distinct vectors; the other methods share one.
    """
    _check_replicates(mask_a, method)

    if method == "per-condition":
        shared = []
        described = []
        for tag, m in (("A", mask_a), ("B", ~mask_a)):
            means, raw = moment_dispersions(normed[:, m], size_factors[m])
            trend = fit_dispersion_trend(means, raw, fit_type=fit_type, min_disp=min_disp)
            shared.append(_share_max(raw, trend(means), min_disp))
            described.append(f"{tag}:{trend.describe()}")
        return shared[0], shared[1], " ".join(described)

    if method == "blind":
        means, raw = moment_dispersions(normed, size_factors)
    elif method == "pooled":
        means, raw = pooled_moment_dispersions(normed, size_factors, mask_a)
    elif method == "pooled-CR":
        means = normed.mean(axis=1)
        raw = cox_reid_dispersions(counts, mask_a, cell_ids)
    else:
        raise ValueError(f"Unknown dispersion method: {method!r}")

    trend = fit_dispersion_trend(means, raw, fit_type=fit_type, min_disp=min_disp)
    disp = _share_max(raw, trend(means), min_disp)
    return disp, disp, trend.describe()


# -----------------------------------------------------------------------------
# Exact test
# -----------------------------------------------------------------------------
def nbinom_exact_test(
    counts: np.ndarray,
    size_factors: np.ndarray,
    mask_a: np.ndarray,
    disp_a: np.ndarray,
    disp_b: np.ndarray,
) -> np.ndarray:
    """
    Two-sided exact test of the per-condition count sums.

    Under H0 both groups share the pooled normalized mean; the sum of a group
    is NB with mean mu * sum(sf) and variance mu * sum(sf) + disp * mu^2 * sum(sf^2).
    The p-value is min(1, 2 * tail / total) over all splits of the observed total.
    """
    sf_a = size_factors[mask_a]
    sf_b = size_factors[~mask_a]
    k_a = counts[:, mask_a].sum(axis=1).astype(np.int64)
    k_b = counts[:, ~mask_a].sum(axis=1).astype(np.int64)

    mus = (counts / size_factors[None, :]).mean(axis=1)
    mu_a = mus * sf_a.sum()
    mu_b = mus * sf_b.sum()
    var_a = np.maximum(mu_a + disp_a * mus ** 2 * np.sum(sf_a ** 2), mu_a * (1 + 1e-8))
    var_b = np.maximum(mu_b + disp_b * mus ** 2 * np.sum(sf_b ** 2), mu_b * (1 + 1e-8))
    with np.errstate(divide="ignore", invalid="ignore"):
        size_a = mu_a ** 2 / (var_a - mu_a)
        size_b = mu_b ** 2 / (var_b - mu_b)

    pvals = np.full(counts.shape[0], np.nan, dtype=np.float64)
    for i in range(counts.shape[0]):
        total = int(k_a[i] + k_b[i])
        if total == 0:
            continue
        ks = np.arange(total + 1)
        logp = stats.nbinom.logpmf(ks, size_a[i], size_a[i] / (size_a[i] + mu_a[i])) + stats.nbinom.logpmf(
            total - ks, size_b[i], size_b[i] / (size_b[i] + mu_b[i])
        )
        log_total = logsumexp(logp)
        if k_a[i] * sf_b.sum() < k_b[i] * sf_a.sum():
            tail = logp[: k_a[i] + 1]
        else:
            tail = logp[k_a[i]:]
        pvals[i] = min(1.0, 2.0 * float(np.exp(logsumexp(tail) - log_total)))
    return pvals


# -----------------------------------------------------------------------------
# Worker entry point (must stay importable at module level for spawn pools)
# -----------------------------------------------------------------------------
def run_chunk_test(chunk: Chunk, context: WorkerContext) -> Tuple[int, pd.DataFrame, Dict[str, Any]]:
    """
    Worker: test every gene of one chunk.
    Returns (chunk_index, partial_result_df, summary_meta).
    Raises FitError when the chunk's dispersions or p-values are undefined.
    """
    t0 = time.perf_counter()
    counts = np.asarray(chunk.counts, dtype=np.float64)
    mask_a = context.mask_a
    if counts.shape[1] != mask_a.shape[0]:
        raise ValueError(
            f"Chunk {chunk.index} has {counts.shape[1]} cells but the condition vector has {mask_a.shape[0]}."
        )

    try:
        flat = np.ptp(counts, axis=1) == 0
        if np.any(flat):
            examples = [g for g, f in zip(chunk.genes, flat) if f][:5]
            raise FitError(
                f"dispersion fit failed: {int(flat.sum())} gene(s) have zero variance across all cells "
                f"(e.g. {examples})."
            )

        with warnings.catch_warnings(record=True) as wrec:
            warnings.simplefilter("always")

            size_factors = estimate_size_factors(counts)
            normed = counts / size_factors[None, :]

            disp_a, disp_b, trend_desc = estimate_dispersions(
                counts,
                normed,
                size_factors,
                mask_a,
                method=context.dispersion_method,
                fit_type=context.fit_type,
                min_disp=context.min_disp,
                cell_ids=context.cell_ids,
            )
            pvals = nbinom_exact_test(counts, size_factors, mask_a, disp_a, disp_b)

        bad = ~np.isfinite(pvals)
        if np.any(bad):
            raise FitError(f"significance test undefined for {int(bad.sum())} gene(s).")
    except FitError as e:
        raise FitError(f"Chunk {chunk.index} ({chunk.n_genes} genes): {e}") from e

    mean_a = normed[:, mask_a].mean(axis=1)
    mean_b = normed[:, ~mask_a].mean(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        raw_fc = mean_b / mean_a

    res = pd.DataFrame(
        {
            "gene": list(chunk.genes),
            "baseMean": normed.mean(axis=1),
            "meanA": mean_a,
            "meanB": mean_b,
            "pvalue": pvals,
            "foldChange": raw_fc,
        },
        columns=RESULT_COLUMNS,
    )

    LOGGER.debug(
        "Chunk %d: %d genes, trend=%s, size factors %.3g-%.3g",
        chunk.index, chunk.n_genes, trend_desc, size_factors.min(), size_factors.max(),
    )

    msgs = list(dict.fromkeys(str(getattr(w, "message", w)) for w in wrec))
    meta = {
        "chunk": int(chunk.index),
        "status": "ok",
        "n_genes": int(chunk.n_genes),
        "fit_type": context.fit_type,
        "dispersion_method": context.dispersion_method,
        "trend": trend_desc,
        "size_factor_min": float(size_factors.min()),
        "size_factor_max": float(size_factors.max()),
        "n_warnings": int(len(wrec)),
        "warnings": "; ".join(msgs),
        "runtime_s": float(time.perf_counter() - t0),
    }
    return int(chunk.index), res, meta
