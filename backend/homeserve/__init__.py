"""HomeServe real-time messaging and presence relay."""
