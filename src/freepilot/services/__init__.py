"""External collaborators invoked by the job pipeline stages."""
