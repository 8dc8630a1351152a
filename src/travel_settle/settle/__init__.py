"""Multi-currency balance and settlement engine."""
