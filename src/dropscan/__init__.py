"""Drop-folder malware triage: watch, scan with clamd, route by verdict."""

__version__ = "0.1.0"
