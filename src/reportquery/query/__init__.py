"""Source-agnostic query definitions, parameters and validation."""
