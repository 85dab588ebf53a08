"""Invoice mapping and the Siigo API client."""
