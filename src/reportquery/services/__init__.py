"""Application services: error taxonomy, credentials and the engine facade."""
