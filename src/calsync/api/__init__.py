"""HTTP surface for calsync (push-notification receiver and health check)."""
