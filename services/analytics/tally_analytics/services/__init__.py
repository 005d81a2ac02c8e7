"""Analytics business logic services."""
