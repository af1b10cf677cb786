"""fossilctl MCP server: store operations exposed as Model Context Protocol tools."""
