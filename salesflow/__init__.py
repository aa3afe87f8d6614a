"""SalesFlow: workflow automation for leads moving through a sales pipeline."""

__version__ = "1.0.0"
