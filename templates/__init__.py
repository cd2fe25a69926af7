from templates.builder import TemplateBuilder
from templates.catalogue import TemplateCatalogue
from templates.store import TemplateStore

__all__ = ["TemplateBuilder", "TemplateCatalogue", "TemplateStore"]
