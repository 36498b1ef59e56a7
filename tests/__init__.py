"""
tests/
------
MediFlow Clinical API Client - Test Package
--------------------------------------------
Test suites for the API communication layer.  Nothing here touches the
network: HTTP is served by httpx.MockTransport or, end to end, by the
FastAPI app in mock_backend.py through httpx.ASGITransport.

Test Modules:
    - test_api_config.py: environment settings and health URL derivation
    - test_api_models.py: entity table, options and batch models
    - test_api_transport.py: envelope parsing, error mapping, credentials
    - test_response_cache.py: TTL, keys and invalidation
    - test_monitoring.py: error reports and timing spans
    - test_request_interceptor.py: retry, reporting, 401 handling, cancellation
    - test_api_client.py: façade caching and write invalidation
    - test_batch.py: batch ordering, isolation and concurrency
    - test_health_check.py: health probe outcomes
    - test_end_to_end.py: full stack against the in-process backend

Project: MediFlow Clinical API Client
"""
