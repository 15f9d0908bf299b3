"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Durable job record states.

    State transitions:
    - PENDING -> RUNNING (first pull by a worker)
    - RUNNING -> RUNNING (redelivery after a retryable failure)
    - RUNNING -> COMPLETED (handler resolved)
    - RUNNING -> FAILED (attempts exhausted or non-retryable error)
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueName(StrEnum):
    """Named queues, one worker pool each."""

    CONTENT = "content"
    SEO = "seo"
    GSC = "gsc"
    SITE = "site"
    DOMAIN = "domain"
    ANALYTICS = "analytics"
    ABTEST = "abtest"
    SYNC = "sync"
    MICROSITE = "microsite"
    SOCIAL = "social"
    ADS = "ads"


class JobType(StrEnum):
    """Every job type a producer may enqueue."""

    # content
    CONTENT_GENERATE = "CONTENT_GENERATE"
    CONTENT_OPTIMIZE = "CONTENT_OPTIMIZE"
    CONTENT_REVIEW = "CONTENT_REVIEW"

    # seo + link building
    SEO_ANALYZE = "SEO_ANALYZE"
    SEO_AUTO_OPTIMIZE = "SEO_AUTO_OPTIMIZE"
    SEO_OPPORTUNITY_SCAN = "SEO_OPPORTUNITY_SCAN"
    SEO_OPPORTUNITY_OPTIMIZE = "SEO_OPPORTUNITY_OPTIMIZE"
    SITE_SCAN = "SITE_SCAN"
    LINK_OPPORTUNITY_SCAN = "LINK_OPPORTUNITY_SCAN"
    LINK_BACKLINK_MONITOR = "LINK_BACKLINK_MONITOR"
    LINK_OUTREACH_GENERATE = "LINK_OUTREACH_GENERATE"
    LINK_ASSET_GENERATE = "LINK_ASSET_GENERATE"

    # search console
    GSC_SYNC = "GSC_SYNC"
    GSC_VERIFY = "GSC_VERIFY"
    GSC_SETUP = "GSC_SETUP"

    # sites
    SITE_CREATE = "SITE_CREATE"
    SITE_DEPLOY = "SITE_DEPLOY"
    QUEUE_CLEANUP = "QUEUE_CLEANUP"

    # domains
    DOMAIN_REGISTER = "DOMAIN_REGISTER"
    DOMAIN_VERIFY = "DOMAIN_VERIFY"
    SSL_PROVISION = "SSL_PROVISION"

    # analytics
    GA4_SETUP = "GA4_SETUP"
    GA4_DAILY_SYNC = "GA4_DAILY_SYNC"
    METRICS_AGGREGATE = "METRICS_AGGREGATE"
    PERFORMANCE_REPORT = "PERFORMANCE_REPORT"
    REFRESH_ANALYTICS_VIEWS = "REFRESH_ANALYTICS_VIEWS"
    QUEUE_METRICS_SNAPSHOT = "QUEUE_METRICS_SNAPSHOT"

    # a/b tests
    ABTEST_ANALYZE = "ABTEST_ANALYZE"
    ABTEST_REBALANCE = "ABTEST_REBALANCE"

    # supplier sync
    SUPPLIER_SYNC = "SUPPLIER_SYNC"
    PRODUCT_SYNC = "PRODUCT_SYNC"

    # microsites
    MICROSITE_CREATE = "MICROSITE_CREATE"
    MICROSITE_PUBLISH = "MICROSITE_PUBLISH"
    MICROSITE_CONTENT_GENERATE = "MICROSITE_CONTENT_GENERATE"
    MICROSITE_GSC_SYNC = "MICROSITE_GSC_SYNC"

    # social
    SOCIAL_POST_GENERATE = "SOCIAL_POST_GENERATE"
    SOCIAL_POST_PUBLISH = "SOCIAL_POST_PUBLISH"
    SOCIAL_DAILY_POSTING = "SOCIAL_DAILY_POSTING"

    # paid acquisition
    AD_CAMPAIGN_SYNC = "AD_CAMPAIGN_SYNC"
    AD_PERFORMANCE_REPORT = "AD_PERFORMANCE_REPORT"
    AD_BUDGET_OPTIMIZER = "AD_BUDGET_OPTIMIZER"
    BIDDING_ENGINE_RUN = "BIDDING_ENGINE_RUN"


# Fan-out sentinel: a job addressed to every tenant rather than one.
ALL_TENANTS = "all"

# Payload keys understood by the orchestration layer
PAYLOAD_TENANT_ID = "tenant_id"
PAYLOAD_DOMAIN_ID = "domain_id"
PAYLOAD_DURABLE_JOB_ID = "durable_job_id"

# Error stored on the record of an item an operator removed before it ran
REMOVED_BY_OPERATOR = "removed by operator"

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_REMOVE_ON_COMPLETE = 100
DEFAULT_REMOVE_ON_FAIL = 500
RECENT_ITEMS_DEFAULT = 50
RECENT_ITEMS_MAX = 100

# Coordination store key prefixes
LOCK_KEY_PREFIX = "lock"
DEDUP_KEY_PREFIX = "dedup"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "orchestrator_queue_depth"
METRIC_JOBS_ENQUEUED = "orchestrator_jobs_enqueued_total"
METRIC_JOBS_DEDUPLICATED = "orchestrator_jobs_deduplicated_total"
METRIC_JOBS_COMPLETED = "orchestrator_jobs_completed_total"
METRIC_JOB_DURATION = "orchestrator_job_duration_seconds"
METRIC_STALLED_RECOVERED = "orchestrator_stalled_items_recovered_total"
METRIC_LOCK_ACQUISITIONS = "orchestrator_lock_acquisitions_total"
METRIC_STORE_MEMORY = "orchestrator_coordination_store_memory_bytes"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_EXECUTE_JOB = "execute_job"
