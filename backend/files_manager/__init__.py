"""Files manager: file storage API with asynchronous thumbnail processing."""
