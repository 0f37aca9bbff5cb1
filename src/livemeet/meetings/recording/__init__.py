"""Recording control over the external capture service and VOD storage."""
