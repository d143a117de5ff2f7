"""quoteflow — supplier quotation workflow service."""

__version__ = "0.4.0"
