"""
Readiness (Form 5) workflow: section completion scoring, submission
validation and QCTO review with recommendations.
"""
