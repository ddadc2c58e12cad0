"""OAuth relay: hands tokens from a browser login to a headless CLI."""
