"""
Document templates: HTML with `{{variable}}` placeholders, filled from asset
data and optionally rendered to PDF or saved back as a controlled document.
"""

