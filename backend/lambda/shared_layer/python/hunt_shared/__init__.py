"""hunt_shared — Shared layer for the scavenger hunt Lambda functions.

Provides:
    - Device/team lock coordination (device locks + signed lock tokens)
    - Per-dependency circuit breakers and bounded retry with backoff
    - Idempotency key derivation for photo uploads
    - The orchestrated upload saga (upload -> verify -> persist -> compensate)
    - HTTP response helpers with CORS, DynamoDB serialization, boto3 clients
"""

__version__ = "1.0.0"
