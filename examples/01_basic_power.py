"""
Basic Power Analysis Example
============================

This example simulates ERP samples with a known condition difference,
removes trials the way real recordings lose them, and compares how often
a linear mixed-effects model and a repeated-measures ANOVA detect the
difference.
"""

import erpower

# Example: Nc amplitude to two emotion conditions in infants
# Research question: Does case deletion cost the ANOVA power the LME keeps?

print("=" * 60)
print("BASIC POWER ANALYSIS EXAMPLE")
print("=" * 60)

# 1. Define the design (defaults reproduce the published simulation)
# 50 subjects, 5 actors, 10 presentations per actor and condition
model = erpower.ERPower(subject_n=50)

# 2. Percentages of subjects pushed below the 10-trial inclusion threshold
model.set_case_deletion([0, 6, 11, 32])
model.set_seed(20210329)

print("\nModel setup complete:")
print(f"Formula: {model.config.lme_formula}")
print(f"Population A - B difference: {model.config.population_values()['A - B']:.3f} uV")
print(f"Case-deletion percentages: {list(model.config.case_deletion_pcts)}")

# 3. Run the batch
print("\n" + "=" * 60)
print("POWER ANALYSIS RESULTS")
print("=" * 60)

print("\n1. LME POWER AT 32% CASE DELETION:")
model.find_power(
    sample_n=20,
    condition="A - B",
    model_type="LME",
    case_deletion_pct=32,
)

# 4. Reuse the batch for the ANOVA
print("\n2. ANOVA POWER AT 32% CASE DELETION:")
anova_power = model.find_power(
    model_type="ANOVA",
    case_deletion_pct=32,
    print_results=False,
    return_results=True,
)
print(f"ANOVA power: {anova_power:.1f}%")

# 5. Full table: power, CI coverage and model problems per percentage
print("\n3. SUMMARY TABLE:")
print(model.summary().to_string(index=False))

print("\n" + "=" * 60)
print("INTERPRETATION GUIDE")
print("=" * 60)
print("• Power: % of samples where the contrast p-value is below alpha")
print("• Coverage: % of valid fits whose interval contains the population value")
print("• Problem rate: % of LME fits flagged as non-converged or singular")
print("• The LME keeps low-count subjects; the ANOVA drops them entirely")
