"""Provider-independent core: events, errors, models, providers contract, stream handling."""
