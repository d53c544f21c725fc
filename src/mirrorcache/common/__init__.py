"""Settings, schemas, security and observability shared across the proxy and its tools."""
