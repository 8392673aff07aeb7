"""HTTP administrative and job API."""
