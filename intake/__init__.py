"""Backend package: settings, DB models, file storage, intake pipelines, API.

Accepts document verification uploads and feedback, contact and registration
forms, persists them and serves them back to the admin view.
"""
