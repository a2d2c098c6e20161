"""building_safety_shared — Shared utilities for building-safety Lambda functions.

Provides:
    - Cognito JWT authentication (cookie or bearer header)
    - DynamoDB / S3 client singletons
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization and observability log lines
"""

__version__ = "1.0.0"
