"""Registration Sync - Services"""
