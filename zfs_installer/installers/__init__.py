"""Operating system installers, run against the temporary volume."""
