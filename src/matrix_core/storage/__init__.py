"""SQLite persistence shared by memory, graph and queue components."""
