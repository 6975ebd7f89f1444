"""Real-time messaging core: delivery, conversations and contacts."""
