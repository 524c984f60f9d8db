"""Agent tools: catalog, dispatch, mail client, UI cards."""
