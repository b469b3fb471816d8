"""Control-plane protocol between the consume daemon and its clients."""
