"""
Profile Data Cleaning Package

Cleans the PostgreSQL tables behind a user-profile application.

Modules:
- analysis: Read-only data quality diagnostics
- backup: Snapshot tables before destructive statements
- cleaning: Ordered normalization and deduplication statements
- validation: Post-cleaning checks and pattern validation
- maintenance: Index rebuild, planner statistics, monitoring objects
- report: Row-count summary
- profile: Optimized single-user profile fetch
- extract / transform: In-memory dry run over DataFrames
- validator: Field-level validation rules
- run_etl: Pipeline orchestration and command line
"""

__version__ = "1.0.0"
__author__ = "Data Engineering Team"
