"""Multi-tenant WhatsApp Business Cloud API bridge."""
