"""Kopf handler registrations. Importing a module registers its handlers."""
