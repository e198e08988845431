"""
Institutions module.

- Institution records, onboarding completion and profile edits
- Staff listing and deactivation
- Qualification catalogue (platform-admin managed)
"""
