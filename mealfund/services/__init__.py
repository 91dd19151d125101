"""Business services for the settlement core."""
