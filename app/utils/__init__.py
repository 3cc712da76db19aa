"""
UTILITIES PACKAGE
=================

Helpers used by the services (no HTTP, no business logic):

  text_utils - bearer_token(), mask_api_key(), speakable_text().
"""
