from .importer import CatalogImporter, ImportRowError, slugify

__all__ = ['CatalogImporter', 'ImportRowError', 'slugify']
