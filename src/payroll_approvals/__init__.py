"""Authorization and pay-run approval core for multi-tenant payroll administration."""

__version__ = "0.1.0"
