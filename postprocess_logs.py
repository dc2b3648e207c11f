#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path
import sys

import numpy as np
import pandas as pd

COMMANDS = ("EXTEND", "RETRACT", "NEUTRAL")


# ==========================================================
# CSV loading (semicolon-delimited, as written by utils/io_worker.TraceWriter)
# ==========================================================
def read_trace_csv(path: Path) -> pd.DataFrame:
    """
    Read a semicolon-delimited cycle trace.
    Uses python engine to tolerate malformed rows (e.g. a file cut off mid-line).
    """
    df = pd.read_csv(
        path,
        sep=";",
        engine="python",
        on_bad_lines="skip",   # skip broken rows instead of crashing
    )
    for col in ("t", "setpoint", "measurement", "control_signal", "missed_ticks"):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


# ==========================================================
# Summary
# ==========================================================
def summarize(df: pd.DataFrame) -> dict:
    """One row of run statistics. Cycles without a sample are left out of the error figures."""
    cycles = int(len(df))
    meas = df["measurement"].to_numpy(dtype=float)
    sp = df["setpoint"].to_numpy(dtype=float)
    valid = ~np.isnan(meas)
    err = sp[valid] - meas[valid]

    cmd = df["command"].astype(str)
    changes = int((cmd != cmd.shift()).sum() - 1) if cycles else 0

    out = {
        "cycles": cycles,
        "duration_s": float(df["t"].iloc[-1] - df["t"].iloc[0]) if cycles else 0.0,
        "missing_samples": int((~valid).sum()),
        "rms_error": float(np.sqrt(np.mean(err ** 2))) if err.size else np.nan,
        "max_abs_error": float(np.max(np.abs(err))) if err.size else np.nan,
        "command_changes": max(changes, 0),
        "missed_ticks": int(df["missed_ticks"].fillna(0).sum()) if "missed_ticks" in df else 0,
    }
    for name in COMMANDS:
        out[f"duty_{name.lower()}"] = float((cmd == name).mean()) if cycles else 0.0
    return out


def plot_trace(df: pd.DataFrame, out_path: Path) -> Path:
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, (ax1, ax2) = plt.subplots(2, 1, sharex=True, figsize=(10, 6))
    ax1.plot(df["t"], df["setpoint"], "r-", label="Set-point")
    ax1.plot(df["t"], df["measurement"], "b-", label="Measured")
    ax1.set_ylabel("Position [0..1]")
    ax1.set_ylim(-0.05, 1.05)
    ax1.legend()

    level = df["command"].map({"RETRACT": -1, "NEUTRAL": 0, "EXTEND": 1}).fillna(0)
    ax2.step(df["t"], level, where="post")
    ax2.set_yticks([-1, 0, 1])
    ax2.set_yticklabels(["retract", "neutral", "extend"])
    ax2.set_xlabel("Time (s)")

    fig.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)
    return out_path


# ==========================================================
# Processing
# ==========================================================
def process_file(path: Path, plot: bool = False) -> Path:
    df = read_trace_csv(path)
    summary = summarize(df)
    out_path = path.with_name(path.stem + "_summary" + path.suffix)
    pd.DataFrame([summary]).to_csv(out_path, index=False, sep=";")
    if plot:
        plot_trace(df, path.with_suffix(".png"))
    return out_path


def iter_csv_files(p: Path, recursive: bool) -> list[Path]:
    if p.is_file():
        return [p]
    if not p.exists():
        return []
    pattern = "**/*.csv" if recursive else "*.csv"
    return sorted(f for f in p.glob(pattern) if not f.stem.endswith("_summary"))


# ==========================================================
# CLI
# ==========================================================
def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description="Summarize cylinder servo cycle traces."
    )
    ap.add_argument("input", type=str, help="CSV file or folder")
    ap.add_argument("--recursive", action="store_true", help="Process folders recursively")
    ap.add_argument("--plot", action="store_true", help="Also save a PNG next to each trace")
    args = ap.parse_args(sys.argv[1:] if argv is None else argv)

    p = Path(args.input).expanduser().resolve()
    files = iter_csv_files(p, args.recursive)

    if not files:
        print(f"[ERROR] No CSV files found at: {p}")
        return 2

    failures = 0
    for f in files:
        try:
            out = process_file(f, plot=args.plot)
            print(f"[OK] {f.name} → {out.name}")
        except (OSError, KeyError, ValueError, pd.errors.ParserError) as e:
            failures += 1
            print(f"[FAIL] {f}: {e}")

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
