"""pysuv - supervise your programs from the command line."""

__version__ = "0.1.0"
