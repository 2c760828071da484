"""Calendar synchronization engine: tokens, remote client, reconciliation, webhooks, watches."""
