"""
Ridgelight Analysis Module

Subject-level decoding analyses on trial-wise fMRI activity.

Submodules:
    mvpa: Searchlight MVPA with cross-validated empirical ridge regression
"""
