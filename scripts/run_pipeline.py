#!/usr/bin/env python3
"""
run_pipeline.py

Recompute the IMD 2019 composite for the selected LSOAs and fit spatial error
models of crime counts on the crime-excluded index.

Inputs (paths from configs/params.yml `inputs`, relative to data/raw):
    - LSOA 2011 boundaries (Shapefile/GeoPackage)
    - outer region boundary
    - IoD2019 File 7 (scores, district codes) as CSV
    - IoD2019 File 9 (exponentially transformed domain scores) as xlsx
    - police.uk street-level crime CSVs (one per force and month)

Outputs:
    - data/processed/joined/lsoa_joined.parquet (areas, scores, counts, recomputed index)
    - data/processed/index/imd_recomputed.csv (per-area recomputation and reference delta)
    - data/processed/models/spatial_error_models.csv (one row per fitted model)
    - data/processed/models/run_summary.json (diagnostics, join plan, reference summary)
    - data/processed/metadata/*_metadata.json (provenance sidecars)

Non-negotiable:
    - Keys are taken from the declared source mapping only
    - Atomic writes
    - Joined table schema validated before writing
    - Reference mismatches are reported, never corrected
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import argparse
from typing import Dict, List

from imd_crime.hashing import validate_cache, write_metadata_sidecar
from imd_crime.io_utils import (
    atomic_write_df,
    atomic_write_gdf,
    atomic_write_json,
    load_params,
    read_df,
    read_events,
    read_gdf,
    read_sheet,
)
from imd_crime.logging_utils import get_logger
from imd_crime.paths import INDEX_DIR, JOINED_DIR, MODELS_DIR, RAW_DIR, ensure_dirs_exist
from imd_crime.pipeline import DeprivationCrimePipeline, PipelineInputs
from imd_crime.qa import assert_all_valid, compute_na_rates, validate_bounds

SCRIPT_NAME = "run_pipeline"

OUTPUT_JOINED = JOINED_DIR / "lsoa_joined.parquet"
OUTPUT_INDEX = INDEX_DIR / "imd_recomputed.csv"
OUTPUT_MODELS = MODELS_DIR / "spatial_error_models.csv"
OUTPUT_SUMMARY = MODELS_DIR / "run_summary.json"


def resolve_inputs(params: dict) -> Dict[str, object]:
    """Input name -> path (or list of paths for the crime CSVs)."""
    config = params["inputs"]
    crime_files: List[Path] = sorted(RAW_DIR.glob(config["crime_glob"]))
    if not crime_files:
        raise FileNotFoundError(f"No crime files match {RAW_DIR / config['crime_glob']}")
    return {
        "boundaries": RAW_DIR / config["boundaries"],
        "outer_boundary": RAW_DIR / config["outer_boundary"],
        "deprivation": RAW_DIR / config["deprivation"],
        "transformed_scores": RAW_DIR / config["transformed_scores"]["path"],
        "crime": crime_files,
    }


def load_inputs(params: dict, paths: Dict[str, object], logger) -> PipelineInputs:
    """Read every raw source with its own column names."""
    sources = params["sources"]
    sheet = params["inputs"]["transformed_scores"].get("sheet", 0)

    boundaries = read_gdf(paths["boundaries"])
    outer_boundary = read_gdf(paths["outer_boundary"])
    deprivation = read_df(paths["deprivation"])
    transformed = read_sheet(paths["transformed_scores"], sheet_name=sheet)

    crime_cfg = sources["crime"]
    events = read_events(paths["crime"], usecols=[crime_cfg["key"], *crime_cfg["columns"]])

    logger.info("Inputs loaded", extra={
        "boundaries": len(boundaries),
        "deprivation": len(deprivation),
        "transformed_scores": len(transformed),
        "events": len(events),
        "crime_files": len(paths["crime"]),
    })

    return PipelineInputs(
        boundaries=boundaries,
        outer_boundary=outer_boundary,
        attribute_tables={
            "deprivation": deprivation,
            "transformed_scores": transformed,
        },
        events=events,
    )


def main():
    parser = argparse.ArgumentParser(description="IMD recomputation and crime spatial error models")
    parser.add_argument("--force", action="store_true", help="Rerun even if inputs and config are unchanged")
    args = parser.parse_args()

    logger = get_logger(SCRIPT_NAME)
    run_id = logger.run_id
    logger.info("Script starting", extra={"script": SCRIPT_NAME, "run_id": run_id})

    params = load_params()
    logger.log_config(params)
    ensure_dirs_exist()

    paths = resolve_inputs(params)
    logger.log_inputs({
        name: (str(p) if isinstance(p, Path) else f"{len(p)} files")
        for name, p in paths.items()
    })

    if not args.force and validate_cache(OUTPUT_SUMMARY, paths, params):
        logger.info("Outputs up to date; nothing to do (use --force to rerun)")
        print(f"✓ Outputs up to date: {OUTPUT_SUMMARY}")
        logger.close()
        return

    inputs = load_inputs(params, paths, logger)

    # =========================================================================
    # Run
    # =========================================================================

    pipeline = DeprivationCrimePipeline(inputs, params=params, logger=logger)
    result = pipeline.run()

    assert_all_valid(result.joined, "joined areas")
    validate_bounds(result.joined, "joined areas")
    logger.info("Joined table NA rates", extra={"na_rates": compute_na_rates(result.joined.drop(columns="geometry"))})

    # =========================================================================
    # Write outputs
    # =========================================================================

    index_cols = [
        c for c in [
            "lsoa_code", "district_code", "district_name", "imd_score",
            "imd_recomputed", "imd_recomputed_excl_crime", "reference_delta", "is_complete",
        ]
        if c in result.joined.columns
    ]

    atomic_write_gdf(result.joined, OUTPUT_JOINED)
    atomic_write_df(result.joined[index_cols], OUTPUT_INDEX, index=False)
    atomic_write_df(result.regressions_frame(), OUTPUT_MODELS, index=False)

    summary = result.summary()
    atomic_write_json(summary, OUTPUT_SUMMARY)

    for output in (OUTPUT_JOINED, OUTPUT_INDEX, OUTPUT_MODELS, OUTPUT_SUMMARY):
        write_metadata_sidecar(
            output, paths, params, run_id,
            extra={"n_areas": len(result.joined), "n_models": len(result.regressions)},
        )

    logger.log_outputs({
        "joined": str(OUTPUT_JOINED),
        "index": str(OUTPUT_INDEX),
        "models": str(OUTPUT_MODELS),
        "summary": str(OUTPUT_SUMMARY),
    })
    logger.info("Script complete", extra={"diagnostics": result.diagnostics.to_dict()})

    # =========================================================================
    # Print summary
    # =========================================================================

    print(f"\n✓ {len(result.joined)} areas joined ({summary['n_complete']} complete)")
    if result.reference_summary:
        ref = result.reference_summary
        print(
            f"  Reference comparison: {ref['n_mismatch']}/{ref['n_compared']} differ "
            f"({ref['mismatch_rate']:.2%}), {ref['n_last_place']} by one unit in the last place"
        )
    print(f"  Islands: {len(result.weights.islands)}")

    print("\n  Spatial error models:")
    for name, model in result.regressions.items():
        flag = "*" if model.lambda_significant else " "
        print(
            f"    {name}: b={model.coefficient:.4f} (se {model.standard_error:.4f}, p={model.p_value:.3g}), "
            f"lambda={model.spatial_lambda:.3f}{flag} n={model.n_observations}"
        )
    for failure in result.failures:
        print(f"    ✗ {failure}")

    logger.close()


if __name__ == "__main__":
    main()
