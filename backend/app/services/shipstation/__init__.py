"""Carrier platform integration: codec, credentials, auth and gateways."""
