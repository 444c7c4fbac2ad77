"""Built-in tools and the tool registry."""

from codeloop.tools.base import BaseTool
from codeloop.tools.bash import BashTool
from codeloop.tools.edit import EditTool
from codeloop.tools.glob import GlobTool
from codeloop.tools.grep import GrepTool
from codeloop.tools.manager import ToolManager
from codeloop.tools.read import ReadTool
from codeloop.tools.write import WriteTool

__all__ = [
    "BaseTool",
    "BashTool",
    "EditTool",
    "GlobTool",
    "GrepTool",
    "ReadTool",
    "ToolManager",
    "WriteTool",
]
