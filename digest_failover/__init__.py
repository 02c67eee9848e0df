"""digest_failover — SQS-fed digest dispatch with EC2 failover.

Provides:
    - SQS polling endpoint feeding a bounded worker pool
    - Digest request dispatch with bounded retries
    - On-demand fallback instance provisioning behind a classic ELB
    - Short-lived service URL cache and delayed fallback teardown
"""

__version__ = "1.0.0"
