"""Application infrastructure: lifespan, middleware, resilience, Sentry."""
