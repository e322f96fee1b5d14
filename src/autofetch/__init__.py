"""Change monitoring and conditional fetching of files referenced by records."""
