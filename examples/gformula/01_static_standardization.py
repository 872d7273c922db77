"""
Nonparametric g-formula: single visit
=====================================
Standardize the CD4 outcome over the baseline viral-load distribution in a
4-stratum aggregated table. Treatment effect is 50 in every stratum, so the
standardized ATE is exactly 50 while the naive comparison is confounded.
"""

from regimen import NonparametricGFormula
from regimen.data import TRUE_EFFECT, static_design, static_table

# ── 1. Load the aggregated table ──────────────────────────────────────────────
df = static_table()
print(df.to_string(index=False))

# ── 2. Declare the study design ───────────────────────────────────────────────
design = static_design()
print(design)

# ── 3. Standardize ────────────────────────────────────────────────────────────
result = NonparametricGFormula(design).fit(df, rng=0)

print(result.summary())
print(result.standardization_table((1,)).to_string(index=False))
print(f"\nBias vs truth: {result.bias(TRUE_EFFECT):+.4f}")
