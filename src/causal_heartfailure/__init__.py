"""
Causal analysis of survival in heart-failure patients.

This package tests a literature-derived causal DAG against clinical records, estimates
edge strengths with structural equation and proportional-hazards models, and compares
back-door adjusted, propensity-score and debiased estimates of a serum creatinine effect
on mortality.
"""

__version__ = "1.0.0"
__author__ = "Data Science Research"
