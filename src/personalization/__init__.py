"""
Preference learning and recommendation diversification.

- aggregator: interaction events -> weighted preference profile
- blocklist_manager: hard / soft / temporary negative constraints
- match_scoring: candidate-vs-profile scores and explanations
- diversifier: slot partitioning, pattern lock, annotation
- exploration: adaptive exploring ratio
"""
