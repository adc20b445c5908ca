"""Domain models - Status enums, API schemas and carrier payloads."""
