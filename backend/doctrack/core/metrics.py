"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Tracking metrics
try:
    opens_counter = Counter(
        'doctrack_opens_total',
        'Total number of accepted open pings'
    )
except ValueError:
    opens_counter = REGISTRY._names_to_collectors.get('doctrack_opens_total')

try:
    new_sessions_counter = Counter(
        'doctrack_new_sessions_total',
        'Total number of open pings that started a new viewing session'
    )
except ValueError:
    new_sessions_counter = REGISTRY._names_to_collectors.get('doctrack_new_sessions_total')

try:
    progress_pings_counter = Counter(
        'doctrack_progress_pings_total',
        'Total number of accepted progress pings'
    )
except ValueError:
    progress_pings_counter = REGISTRY._names_to_collectors.get('doctrack_progress_pings_total')

try:
    rejected_pings_counter = Counter(
        'doctrack_rejected_pings_total',
        'Total number of viewer pings rejected before recording',
        ['reason']
    )
except ValueError:
    rejected_pings_counter = REGISTRY._names_to_collectors.get('doctrack_rejected_pings_total')

# Registry metrics
try:
    distributions_registered_counter = Counter(
        'doctrack_distributions_registered_total',
        'Total number of distributions registered',
        ['source']
    )
except ValueError:
    distributions_registered_counter = REGISTRY._names_to_collectors.get('doctrack_distributions_registered_total')

# Cleanup metrics
try:
    cleanup_runs_counter = Counter(
        'doctrack_cleanup_runs_total',
        'Total number of retention sweep runs',
        ['status']
    )
except ValueError:
    cleanup_runs_counter = REGISTRY._names_to_collectors.get('doctrack_cleanup_runs_total')

try:
    cleanup_rows_counter = Counter(
        'doctrack_cleanup_rows_total',
        'Total number of rows affected by the retention sweep',
        ['policy']
    )
except ValueError:
    cleanup_rows_counter = REGISTRY._names_to_collectors.get('doctrack_cleanup_rows_total')

# Purge worker metrics
try:
    purge_jobs_counter = Counter(
        'doctrack_purge_jobs_total',
        'Total number of object purge job outcomes',
        ['status']
    )
except ValueError:
    purge_jobs_counter = REGISTRY._names_to_collectors.get('doctrack_purge_jobs_total')

# Security metrics
try:
    rate_limited_counter = Counter(
        'doctrack_rate_limited_total',
        'Total number of requests rejected by the rate limiter'
    )
except ValueError:
    rate_limited_counter = REGISTRY._names_to_collectors.get('doctrack_rate_limited_total')
