"""Vendor integrations. Importing a subpackage registers it globally."""
