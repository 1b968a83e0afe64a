"""PartySnap push-notification dispatch and read-through cache service."""
