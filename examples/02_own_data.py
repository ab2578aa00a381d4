"""
Own Data Example
================

This example writes simulated samples to CSV, then runs the comparison on
the files in that folder. Replace the folder with your own
``Sample{ID}-MeanAmpOutput.csv`` files to analyse recorded data.
"""

from pathlib import Path

import erpower

print("=" * 60)
print("OWN DATA EXAMPLE")
print("=" * 60)

data_dir = Path("erp_samples")
output_dir = Path("erp_output")

# 1. Write samples (skip this step when you have your own files)
print("1. WRITING SAMPLES:")
model = erpower.ERPower(subject_n=30)
datasets = model.simulate(5, folder=data_dir)
print(f"✓ Wrote {len(datasets)} samples to {data_dir}/")
print(f"Columns: {list(datasets[0].copy_data().columns)}")
print("\n📌 IMPORTANT: files need one row per subject, condition, actor and presentation")
print("   (subjectID/actorID/amplitude are accepted as column aliases)")

# 2. Run from the folder (pip install ERPower[progress] for a tqdm bar)
print("\n" + "=" * 60)
print("RUNNING FROM FILES")
print("=" * 60)

result = model.run(input_folder=data_dir, output_folder=output_dir, progress_callback=erpower.TqdmReporter())

print(f"\nModel-output rows: {len(result.model_output)}")
print(f"Failed samples: {result.n_failed}")
print(f"Outputs written to {output_dir}/")

# 3. Trial counts after missingness induction
print("\n" + "=" * 60)
print("TRIAL COUNTS")
print("=" * 60)
counts = result.trial_counts
below = counts[counts["trialN"] < model.config.min_trials]
print(counts.groupby("caseDeletionPct")["trialN"].describe().to_string())
print(f"\nSubject x condition cells below {model.config.min_trials} trials: {len(below)}")

print("\n" + "=" * 60)
print("POWER")
print("=" * 60)
print(model.summary().to_string(index=False))
