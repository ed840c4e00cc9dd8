"""Infrastructure layer: config files, secrets, lock, CRM client, Excel stores."""
