# src/scdiffex/dispatch.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import ProcessPoolExecutor, TimeoutError, as_completed
from typing import Any, Callable, Dict, List, Sequence, Tuple

import pandas as pd

from .de_worker import WorkerContext, run_chunk_test
from .partition import Chunk

LOGGER = logging.getLogger(__name__)

ChunkWorker = Callable[[Chunk, WorkerContext], Tuple[int, pd.DataFrame, Dict[str, Any]]]


def _log_done(done: int, total: int, meta: Dict[str, Any], dt: float, t0: float) -> None:
    elapsed = time.perf_counter() - t0
    # simple running average ETA
    eta_s = (elapsed / max(1, done)) * (total - done)
    LOGGER.info(
        "DE [%d/%d] done  chunk=%s genes=%s status=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
        done, total,
        meta.get("chunk", "NA"),
        meta.get("n_genes", "NA"),
        meta.get("status", "unknown"),
        dt, elapsed, eta_s,
    )


def _run_serial(
    chunks: Sequence[Chunk],
    context: WorkerContext,
    worker: ChunkWorker,
    t0: float,
) -> Dict[int, Tuple[pd.DataFrame, Dict[str, Any]]]:
    total = len(chunks)
    out: Dict[int, Tuple[pd.DataFrame, Dict[str, Any]]] = {}
    for i, chunk in enumerate(chunks, start=1):
        t_ch0 = time.perf_counter()
        # first failure aborts the run; later chunks never start
        idx, res, meta = worker(chunk, context)
        dt = time.perf_counter() - t_ch0
        meta = dict(meta)
        meta["runtime_s"] = float(dt)
        out[int(idx)] = (res, meta)
        _log_done(i, total, meta, dt, t0)
    return out


def _run_parallel(
    chunks: Sequence[Chunk],
    context: WorkerContext,
    worker: ChunkWorker,
    max_workers: int,
    heartbeat_s: float,
    t0: float,
) -> Dict[int, Tuple[pd.DataFrame, Dict[str, Any]]]:
    total = len(chunks)
    out: Dict[int, Tuple[pd.DataFrame, Dict[str, Any]]] = {}

    # spawn context for this pool only; the global start method is left alone
    ctx = mp.get_context("spawn")
    LOGGER.info(
        "DE: running in parallel (chunks=%d, max_workers=%d, heartbeat=%.0fs).",
        total, max_workers, heartbeat_s,
    )

    submit_ts: Dict[int, float] = {}
    futs = {}
    ex = ProcessPoolExecutor(max_workers=max_workers, mp_context=ctx)
    try:
        for chunk in chunks:
            submit_ts[chunk.index] = time.perf_counter()
            futs[ex.submit(worker, chunk, context)] = chunk.index

        done = 0
        pending = set(futs.keys())
        while pending:
            try:
                # wake up at least every heartbeat_s even if nothing finishes
                for fut in as_completed(pending, timeout=heartbeat_s):
                    pending.remove(fut)
                    ch = futs[fut]
                    t_done = time.perf_counter()
                    dt = t_done - float(submit_ts.get(ch, t_done))

                    idx, res, meta = fut.result()

                    meta = dict(meta)
                    meta["runtime_s"] = float(dt)
                    out[int(idx)] = (res, meta)
                    done += 1
                    _log_done(done, total, meta, dt, t0)
            except TimeoutError:
                now = time.perf_counter()
                pending_ch = sorted((futs[f] for f in pending), key=lambda c: submit_ts.get(c, now))
                longest = [f"{c}:{now - float(submit_ts.get(c, now)):.0f}s" for c in pending_ch[:3]]
                LOGGER.info(
                    "DE heartbeat: done=%d/%d pending=%d elapsed=%.1fs longest=%s",
                    done, total, int(len(pending)), now - t0,
                    ", ".join(longest) if longest else "NA",
                )
    except BaseException:
        # stop scheduling: queued chunks are cancelled, running ones are abandoned
        for fut in futs:
            fut.cancel()
        ex.shutdown(wait=False, cancel_futures=True)
        raise
    else:
        ex.shutdown(wait=True)

    return out


def dispatch_chunks(
    chunks: Sequence[Chunk],
    context: WorkerContext,
    *,
    n_jobs: int = 1,
    heartbeat_s: float = 60.0,
    worker: ChunkWorker = run_chunk_test,
) -> Tuple[List[pd.DataFrame], List[Dict[str, Any]]]:
    """
    Run `worker` on every chunk and return results in chunk order.

    Serial when n_jobs <= 1 or there is a single chunk; otherwise a spawn-based
    process pool of min(n_jobs, n_chunks) workers. The first worker failure is
    re-raised unchanged after outstanding work has been cancelled.

    Returns (partials, summary_rows), both ordered by chunk index.
    """
    chunks = list(chunks)
    if not chunks:
        return [], []

    total = len(chunks)
    n_jobs = max(1, int(n_jobs))
    t0 = time.perf_counter()

    if n_jobs <= 1 or total == 1:
        LOGGER.info("DE: running %d chunk(s) serially.", total)
        out = _run_serial(chunks, context, worker, t0)
    else:
        out = _run_parallel(chunks, context, worker, min(n_jobs, total), float(heartbeat_s), t0)

    order = [c.index for c in chunks]
    missing = [i for i in order if i not in out]
    if missing:
        raise RuntimeError(f"Chunks without a result: {missing}")

    partials = [out[i][0] for i in order]
    summary_rows = [out[i][1] for i in order]

    LOGGER.info("DE: %d chunk(s) finished in %.1fs.", total, time.perf_counter() - t0)
    return partials, summary_rows
