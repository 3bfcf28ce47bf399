"""CRM API connectors: rate-limited client, windowed fetcher, association resolver"""
