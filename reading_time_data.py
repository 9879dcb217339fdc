"""
Reading-Time Analysis Table
===========================

Builds the per-word analysis table used by every model in the family
comparison. Three sources are combined:

- unigram frequencies (Natural Stories ``freqs-1.tsv`` layout)
- bigram frequencies (``freqs-2.tsv`` layout)
- mean reading times per token (``item``, ``zone``, ``meanItemRT``)

Frequency files are headerless and keyed by a composite token code of the
form ``story.position.type`` (e.g. ``1.12.word``).

Derived features:
- log_unigram_freq = log(unigram count)
- log_bigram_prob = log(bigram count / preceding unigram count)
- word_length = number of characters in the token
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "."
WORD_RECORD_TYPE = "word"

FREQUENCY_COLUMNS = ["token_code", "ngram_order", "word", "freq", "context_freq"]

# Reading-time columns
RT_STORY_COLUMN = "item"
RT_POSITION_COLUMN = "zone"
RT_TOKEN_COLUMN = "word"
RT_TRIAL_COLUMN = "RT"
RT_MEAN_COLUMN = "meanItemRT"

KEY_COLUMNS = ["story", "position"]
ANALYSIS_COLUMNS = [
    "story",
    "position",
    "token",
    "log_unigram_freq",
    "log_bigram_prob",
    "word_length",
    "mean_rt",
]
NUMERIC_COLUMNS = ["log_unigram_freq", "log_bigram_prob", "word_length", "mean_rt"]

EXCLUDED_ATTR = "excluded_zero_bigram"


class DataIntegrityError(ValueError):
    """Raised when an input table or the merged table violates its schema."""


def load_frequency_table(filepath) -> pd.DataFrame:
    """Load a headerless n-gram frequency file."""
    logger.info("Loading frequency table from %s", filepath)
    return pd.read_csv(filepath, sep="\t", header=None, names=FREQUENCY_COLUMNS)


def load_reading_times(filepath) -> pd.DataFrame:
    """Load a reading-time file (tab-separated, with header)."""
    logger.info("Loading reading times from %s", filepath)
    return pd.read_csv(filepath, sep="\t")


def _require_columns(df: pd.DataFrame, columns, source: str):
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise DataIntegrityError(
            f"{source} is missing required columns {missing}; "
            f"found {df.columns.tolist()}"
        )


def _require_unique_keys(df: pd.DataFrame, source: str):
    duplicated = df.duplicated(subset=KEY_COLUMNS, keep=False)
    if duplicated.any():
        examples = df.loc[duplicated, KEY_COLUMNS].drop_duplicates().head(5)
        raise DataIntegrityError(
            f"{source} has {int(duplicated.sum())} rows sharing a (story, position) key, "
            f"e.g. {examples.to_dict('records')}"
        )


def parse_token_codes(freqs: pd.DataFrame) -> pd.DataFrame:
    """
    Split the composite token code into story, position and record type.

    Parameters
    ----------
    freqs : pd.DataFrame
        Frequency table with a ``token_code`` column

    Returns
    -------
    pd.DataFrame
        Copy of the input with integer ``story`` and ``position`` columns and
        a string ``record_type`` column
    """
    _require_columns(freqs, ["token_code"], "frequency table")

    parts = freqs["token_code"].astype(str).str.split(KEY_SEPARATOR, n=2, expand=True)
    if parts.shape[1] != 3 or parts.isna().any(axis=None):
        raise DataIntegrityError(
            f"Token codes must look like 'story{KEY_SEPARATOR}position{KEY_SEPARATOR}type'"
        )

    story = pd.to_numeric(parts[0], errors="coerce")
    position = pd.to_numeric(parts[1], errors="coerce")
    bad = story.isna() | position.isna()
    if bad.any():
        raise DataIntegrityError(
            f"Unparseable token codes: {freqs.loc[bad, 'token_code'].head(5).tolist()}"
        )

    parsed = freqs.copy()
    parsed["story"] = story.astype(int)
    parsed["position"] = position.astype(int)
    parsed["record_type"] = parts[2]
    return parsed


def _word_entries(freqs: pd.DataFrame, source: str) -> pd.DataFrame:
    _require_columns(freqs, FREQUENCY_COLUMNS, source)
    parsed = parse_token_codes(freqs)
    words = parsed[parsed["record_type"] == WORD_RECORD_TYPE].copy()
    logger.debug("%s: kept %d of %d entries of type %r", source, len(words), len(parsed), WORD_RECORD_TYPE)
    _require_unique_keys(words, source)
    return words


def _reading_time_entries(reading_times: pd.DataFrame) -> pd.DataFrame:
    _require_columns(
        reading_times, [RT_STORY_COLUMN, RT_POSITION_COLUMN, RT_MEAN_COLUMN], "reading-time table"
    )
    rts = reading_times.rename(
        columns={
            RT_STORY_COLUMN: "story",
            RT_POSITION_COLUMN: "position",
            RT_MEAN_COLUMN: "mean_rt",
        }
    )[KEY_COLUMNS + ["mean_rt"]].copy()

    rts["mean_rt"] = pd.to_numeric(rts["mean_rt"], errors="coerce")
    values = rts["mean_rt"].to_numpy(dtype=float)
    invalid = ~np.isfinite(values) | (values < 0)
    if invalid.any():
        raise DataIntegrityError(
            f"{int(invalid.sum())} reading times are negative, missing or non-finite"
        )

    _require_unique_keys(rts, "reading-time table")
    return rts


def aggregate_reading_times(
    raw: pd.DataFrame, min_rt: float = None, max_rt: float = None
) -> pd.DataFrame:
    """
    Average per-subject reading times into one mean per token.

    Trials outside ``[min_rt, max_rt]`` are discarded before averaging.

    Parameters
    ----------
    raw : pd.DataFrame
        Per-trial reading times with ``item``, ``zone`` and ``RT`` columns
    min_rt, max_rt : float, optional
        Inclusive trial bounds in ms

    Returns
    -------
    pd.DataFrame
        One row per (item, zone) with a ``meanItemRT`` column
    """
    _require_columns(raw, [RT_STORY_COLUMN, RT_POSITION_COLUMN, RT_TRIAL_COLUMN], "raw reading times")

    trials = raw
    if min_rt is not None:
        trials = trials[trials[RT_TRIAL_COLUMN] >= min_rt]
    if max_rt is not None:
        trials = trials[trials[RT_TRIAL_COLUMN] <= max_rt]
    dropped = len(raw) - len(trials)
    if dropped:
        logger.info("Discarded %d of %d trials outside the RT bounds", dropped, len(raw))

    group_cols = [RT_STORY_COLUMN, RT_POSITION_COLUMN]
    if RT_TOKEN_COLUMN in trials.columns:
        group_cols.append(RT_TOKEN_COLUMN)

    means = trials.groupby(group_cols, as_index=False)[RT_TRIAL_COLUMN].mean()
    return means.rename(columns={RT_TRIAL_COLUMN: RT_MEAN_COLUMN})


def merge_frequency_and_reading_times(
    unigrams: pd.DataFrame, bigrams: pd.DataFrame, reading_times: pd.DataFrame
) -> pd.DataFrame:
    """
    Join frequency tables and reading times into the analysis table.

    Rows are matched on (story, position) with inner joins, so tokens missing
    from any source are dropped. Tokens whose bigram count is zero have an
    undefined log bigram probability; they are excluded from the table and
    counted in ``attrs["excluded_zero_bigram"]``.

    Parameters
    ----------
    unigrams : pd.DataFrame
        Unigram frequency table (``FREQUENCY_COLUMNS``)
    bigrams : pd.DataFrame
        Bigram frequency table (``FREQUENCY_COLUMNS``); ``context_freq`` holds
        the count of the preceding word
    reading_times : pd.DataFrame
        Mean reading times (``item``, ``zone``, ``meanItemRT``)

    Returns
    -------
    pd.DataFrame
        Analysis table with ``ANALYSIS_COLUMNS``, sorted by story and position

    Raises
    ------
    DataIntegrityError
        On schema mismatches, duplicate keys, invalid reading times, or any
        missing / non-finite value left after the join
    """
    uni = _word_entries(unigrams, "unigram table")
    bi = _word_entries(bigrams, "bigram table")
    rts = _reading_time_entries(reading_times)

    uni = uni[KEY_COLUMNS + ["word", "freq"]].rename(
        columns={"word": "token", "freq": "unigram_count"}
    )
    bi = bi[KEY_COLUMNS + ["freq", "context_freq"]].rename(
        columns={"freq": "bigram_count", "context_freq": "context_count"}
    )

    merged = uni.merge(bi, on=KEY_COLUMNS, how="inner").merge(rts, on=KEY_COLUMNS, how="inner")
    logger.info(
        "Joined %d unigram, %d bigram and %d reading-time rows into %d rows",
        len(uni),
        len(bi),
        len(rts),
        len(merged),
    )

    for col in ["unigram_count", "bigram_count", "context_count"]:
        merged[col] = pd.to_numeric(merged[col], errors="coerce").astype(float)

    with np.errstate(divide="ignore", invalid="ignore"):
        probability = merged["bigram_count"] / merged["context_count"]
        merged["log_bigram_prob"] = np.log(probability)
        merged["log_unigram_freq"] = np.log(merged["unigram_count"])

    # Zero-count bigrams give log(0); they are excluded, not an error.
    finite_bigram = np.isfinite(merged["log_bigram_prob"].to_numpy(dtype=float))
    n_excluded = int((~finite_bigram).sum())
    if n_excluded:
        logger.info(
            "Excluded %d rows with non-finite log bigram probability (zero bigram count)",
            n_excluded,
        )
    merged = merged[finite_bigram].copy()

    merged["word_length"] = merged["token"].astype(str).str.len()

    table = (
        merged[ANALYSIS_COLUMNS]
        .sort_values(KEY_COLUMNS)
        .reset_index(drop=True)
    )
    validate_analysis_table(table)
    table.attrs[EXCLUDED_ATTR] = n_excluded
    return table


def validate_analysis_table(table: pd.DataFrame):
    """Raise DataIntegrityError unless the table satisfies the analysis invariants."""
    _require_columns(table, ANALYSIS_COLUMNS, "analysis table")

    missing = table[ANALYSIS_COLUMNS].isna().sum()
    if missing.any():
        raise DataIntegrityError(
            f"Missing values after merge: {missing[missing > 0].to_dict()}"
        )

    values = table[NUMERIC_COLUMNS].to_numpy(dtype=float)
    non_finite = ~np.isfinite(values)
    if non_finite.any():
        counts = dict(zip(NUMERIC_COLUMNS, non_finite.sum(axis=0).tolist()))
        offending = {col: n for col, n in counts.items() if n}
        raise DataIntegrityError(f"Non-finite values after merge: {offending}")

    _require_unique_keys(table, "analysis table")


def describe_analysis_table(table: pd.DataFrame) -> pd.DataFrame:
    """Per-story token count, mean and standard deviation of reading time."""
    summary = table.groupby("story")["mean_rt"].agg(["count", "mean", "std"])
    summary.loc["all"] = [len(table), table["mean_rt"].mean(), table["mean_rt"].std()]
    return summary
