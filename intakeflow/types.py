"""Common type definitions for Intakeflow.

Type aliases shared by models, services and the API layer.
"""

from typing import Any

# JSON-compatible types for API responses and database fields
type JSONDict = dict[str, Any]

# Questionnaire answers keyed by question id
type Answers = dict[str, Any]

# Serialized safety flags attached to a case
type FlagList = list[dict[str, Any]]

# Data handed to the document renderer
type RenderData = dict[str, Any]

# API response types
type MessageResponse = dict[str, str]
