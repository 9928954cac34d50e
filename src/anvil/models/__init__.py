"""Model transports, routing and structured-output capability negotiation."""
