"""Command-line orchestration for the front desk."""
