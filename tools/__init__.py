"""
Tools Package

Tools are registered on an explicitly constructed ToolCatalog and offered to
the agent once the catalog is frozen:

    from tools import ToolCatalog

    catalog = ToolCatalog()

    @catalog.tool(description="Current weather for a city",
                  parameters={"city": {"type": "string"}}, required=["city"])
    def get_weather(city):
        ...

    catalog.freeze()
"""

from tools.catalog import ToolCatalog, ToolCatalogError, ToolSpec

__all__ = ["ToolCatalog", "ToolCatalogError", "ToolSpec"]
