"""CRM analytics snapshot sync: windowed fetch, daily buckets, incremental merge"""

__version__ = "0.1.0"
