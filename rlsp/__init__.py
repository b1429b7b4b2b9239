"""R Language Server session manager.

Launches and supervises one R language server process per workspace folder
and brokers a Language Server Protocol connection to each of them.
"""

__version__ = "0.1.0"
