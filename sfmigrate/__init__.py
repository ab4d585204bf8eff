"""sfmigrate - record data migration between CRM orgs and flat-file sets."""

__version__ = "0.1.0"
