"""
attnctl MCP layer — FastMCP tools over the AttentionEngine.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""
