"""numpy-based summary of nonce-search performance across recorded solutions."""
import numpy as np


def summarize_solutions(solutions: list[dict]) -> dict:
    """
    Summarise solve times and hash rate over solution log rows.
    Returns {"count": int, "stats": dict}; stats is empty without data.
    """
    rows = [s for s in solutions if float(s.get("elapsed_s") or 0) > 0]
    if not rows:
        return {"count": len(solutions), "stats": {}}

    elapsed = np.array([float(s["elapsed_s"]) for s in rows], dtype=float)
    attempts = np.array([float(s.get("attempts") or 0) for s in rows], dtype=float)
    rates = attempts / elapsed

    mean_s = float(np.mean(elapsed))
    stats = {
        "solve_time_mean_s": mean_s,
        "solve_time_std_s": float(np.std(elapsed)),
        "solve_time_cv": float(np.std(elapsed) / mean_s) if mean_s > 0 else 0.0,
        "solve_time_max_s": float(np.max(elapsed)),
        "hash_rate_mean": float(np.mean(rates)),
        "hash_rate_median": float(np.median(rates)),
        "attempts_total": int(np.sum(attempts)),
    }

    if all(s.get("difficulty") is not None for s in rows):
        # Expected attempts at difficulty d is 2**d; ratio > 1 means unlucky epochs.
        expected = np.exp2(np.array([s["difficulty"] for s in rows], dtype=float))
        stats["luck_ratio_mean"] = float(np.mean(attempts / expected))

    return {"count": len(solutions), "stats": stats}
