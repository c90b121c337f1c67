"""Command line interface for testing configuration loading"""
from . import settings_conf
from pathlib import Path

def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# Database connection URL (CockroachDB or PostgreSQL)
db_url = postgresql://root@localhost:26257/cardvault?sslmode=disable

# Sellers at or above this trust score (0-100) may use the instant lane
instant_trust_threshold = 80

# Cards valued at or above this amount always require escrow verification
instant_value_threshold = 500

# Locks unresolved for longer than this are reported as stale
stale_lock_hours = 72

# Write integrity check findings to inventory_integrity_issues
integrity_record_issues = true

api_host = 0.0.0.0
api_port = 8000
""")

if __name__ == "__main__":
    main()
