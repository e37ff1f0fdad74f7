"""
Monthly period handling for street-level crime records.

Crime records carry a reporting month ("2019-03"), not a timestamp. Periods
are parsed to pandas monthly Periods so window filters compare months, not
strings.
"""

from typing import Optional, Tuple, Union

import pandas as pd

from imd_crime.io_utils import load_params


def _load_period_config() -> dict:
    """Load the event period window from params.yml."""
    return load_params().get("events", {}).get("period", {})


def parse_periods(values: pd.Series) -> pd.Series:
    """
    Parse month strings ("YYYY-MM") or dates to monthly Periods.

    Unparseable values become NaT rather than raising.
    """
    if isinstance(values.dtype, pd.PeriodDtype):
        return values.dt.asfreq("M")
    parsed = pd.to_datetime(values.astype("string"), format="%Y-%m", errors="coerce")
    return parsed.dt.to_period("M")


def to_period(value: Union[str, pd.Period, None]) -> Optional[pd.Period]:
    """Single month value to a Period (None passes through)."""
    if value is None:
        return None
    return pd.Period(value, freq="M")


def filter_period_window(
    events: pd.DataFrame,
    start: Union[str, pd.Period, None] = None,
    end: Union[str, pd.Period, None] = None,
    column: str = "period",
) -> Tuple[pd.DataFrame, dict]:
    """
    Keep events whose month lies in [start, end] (inclusive).

    Missing bounds are read from `events.period` in params.yml; a bound that
    is still missing leaves that side open. Events with an unparseable month
    are dropped and counted.

    Returns:
        Tuple of (filtered events, stats dictionary)
    """
    if start is None and end is None:
        config = _load_period_config()
        start, end = config.get("start"), config.get("end")

    start_p, end_p = to_period(start), to_period(end)
    periods = parse_periods(events[column])

    keep = periods.notna()
    if start_p is not None:
        keep &= periods >= start_p
    if end_p is not None:
        keep &= periods <= end_p

    stats = {
        "n_input": len(events),
        "n_kept": int(keep.sum()),
        "n_unparseable": int(periods.isna().sum()),
        "start": str(start_p) if start_p is not None else None,
        "end": str(end_p) if end_p is not None else None,
    }
    return events.loc[keep.to_numpy()].reset_index(drop=True), stats
