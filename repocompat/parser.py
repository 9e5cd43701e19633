"""Structural source extractor built on Tree-sitter.

Parses a JavaScript / TypeScript tree into a :class:`ProjectStructure`:

- every non-ignored file lands in the raw inventory (with a checksum for the
  tracked extensions so the snapshot diff can detect edits)
- every source file is classified as a component, service or utility and
  turned into a :class:`SourceUnit` with complexity metrics and idioms

Extraction is error tolerant: a file that cannot be read or walked is
logged, recorded in ``structure.skipped`` and the pass continues.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

import tree_sitter_javascript
import tree_sitter_typescript
from tree_sitter import Language, Parser as TSParser

from . import config
from .errors import AnalysisCancelled, FileParseError
from .models import (
    ComplexityMetrics,
    ConstantDefinition,
    ExportStatement,
    FunctionDefinition,
    HookUsage,
    IdiomMatch,
    ImportStatement,
    MethodDefinition,
    ParameterDefinition,
    ProjectStructure,
    PropDefinition,
    PropertyDefinition,
    SourceUnit,
    TypeDefinition,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File-extension / traversal policy
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
}

SKIP_DIRS: Set[str] = {
    "node_modules", ".git", ".next", "dist", "build", "coverage",
    ".nyc_output", ".vscode", ".idea", ".turbo", ".vercel", "out",
}

SKIP_FILES: Set[str] = {".DS_Store", "Thumbs.db"}

TRACKED_EXTENSIONS: Set[str] = set(LANGUAGE_MAP) | {".json", ".mjs", ".cjs"}

BUILT_IN_HOOKS: Set[str] = {
    "useState", "useEffect", "useContext", "useReducer", "useCallback",
    "useMemo", "useRef", "useImperativeHandle", "useLayoutEffect",
    "useDebugValue",
}

SERVICE_CLASS_RE = re.compile(r"\bclass\s+\w*(Service|Client|Repository|Manager)\b")
HOOK_NAME_RE = re.compile(r"^use[A-Z0-9]")
CONFIG_NAME_RE = re.compile(r".*\.config\.(js|ts|mjs|cjs)$")

IMPURE_MARKERS: Tuple[str, ...] = (
    "console.", "document.", "window.", "localStorage", "sessionStorage",
    "fetch", "axios", "process.env",
)

BRANCH_NODES: Set[str] = {
    "if_statement", "while_statement", "for_statement", "for_in_statement",
    "do_statement", "ternary_expression", "switch_case", "catch_clause",
}
SHORT_CIRCUIT_OPERATORS: Set[str] = {"&&", "||"}

# Brace-delimited blocks; a statement and its body count as one level
NESTING_NODES: Set[str] = {"statement_block", "switch_body"}

FUNCTION_VALUE_NODES: Set[str] = {"arrow_function", "function_expression", "function"}
JSX_NODES: Set[str] = {"jsx_element", "jsx_self_closing_element", "jsx_fragment"}


def is_test_path(rel_path: str) -> bool:
    name = os.path.basename(rel_path)
    parts = Path(rel_path).parts
    return (
        ".test." in name
        or ".spec." in name
        or "__tests__" in parts
    )


def is_config_path(rel_path: str) -> bool:
    """Tool configuration such as ``next.config.js`` or ``tailwind.config.ts``."""
    return CONFIG_NAME_RE.match(os.path.basename(rel_path)) is not None


def is_source_path(rel_path: str) -> bool:
    """True for files that get structural extraction."""
    if Path(rel_path).suffix not in LANGUAGE_MAP:
        return False
    if is_config_path(rel_path):
        return False
    if rel_path.endswith(".d.ts"):
        return False
    return not is_test_path(rel_path)


# File stems that say nothing about what the file holds (Next.js conventions).
GENERIC_STEMS = {"index", "route", "page", "layout"}


def unit_name(rel_path: str) -> str:
    """Fallback unit name: the file stem, or its directory for generic stems."""
    path = Path(rel_path)
    stem = path.name.split(".")[0] if path.suffix else path.name
    if stem in GENERIC_STEMS and path.parent.name:
        return path.parent.name.strip("[]()")
    return path.stem


def complexity_score(
    cyclomatic: int,
    lines_of_code: int,
    structural_factor: float,
    secondary_factor: float,
) -> str:
    score = cyclomatic + (lines_of_code / 10) + structural_factor + secondary_factor
    if score < 10:
        return "low"
    if score < 25:
        return "medium"
    return "high"


# ===================================================================
# Idiom rule tables
# ===================================================================

@dataclass(frozen=True)
class IdiomRule:
    """One heuristic recognizer. Rules are evaluated in table order."""

    name: str
    description: str
    confidence: float
    predicate: Callable[[str], bool]

    def match(self, source: str) -> Optional[IdiomMatch]:
        if self.predicate(source):
            return IdiomMatch(self.name, self.description, self.confidence)
        return None


COMPONENT_IDIOMS: List[IdiomRule] = [
    IdiomRule(
        "Higher-Order Component",
        "Uses HOC pattern for component enhancement",
        0.8,
        lambda s: "withRouter" in s or "connect(" in s or bool(re.search(r"\bwith[A-Z]\w*\(", s)),
    ),
    IdiomRule(
        "Render Props",
        "Uses render props pattern for component composition",
        0.7,
        lambda s: "render=" in s or ("children=" in s and "function" in s),
    ),
    IdiomRule(
        "Custom Hooks",
        "Implements custom hooks for logic reuse",
        0.9,
        lambda s: bool(re.search(r"function\s+use[A-Z]", s) or re.search(r"const\s+use[A-Z]\w*\s*=", s)),
    ),
    IdiomRule(
        "Context API",
        "Uses React Context for state management",
        0.8,
        lambda s: "createContext" in s or "useContext" in s,
    ),
]

SERVICE_IDIOMS: List[IdiomRule] = [
    IdiomRule(
        "Singleton",
        "Implements singleton pattern for single instance",
        0.8,
        lambda s: "getInstance" in s or bool(re.search(r"\bstatic\s+(?:readonly\s+)?_?instance\b", s)),
    ),
    IdiomRule(
        "Repository",
        "Implements repository pattern for data access",
        0.9,
        lambda s: "Repository" in s or "findBy" in s or bool(re.search(r"\bsave\s*\(", s)),
    ),
    IdiomRule(
        "Factory",
        "Implements factory pattern for object creation",
        0.8,
        lambda s: "create" in s and "Factory" in s,
    ),
]


def detect_idioms(source: str, rules: List[IdiomRule]) -> List[IdiomMatch]:
    matches = []
    for rule in rules:
        found = rule.match(source)
        if found is not None:
            matches.append(found)
    return matches


# ===================================================================
# Tree helpers
# ===================================================================

def _text(node: Any) -> str:
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="ignore")


def _walk(node: Any) -> Iterator[Any]:
    """Pre-order traversal without recursion."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def _has_token(node: Any, token: str) -> bool:
    return any(child.type == token for child in node.children)


def _type_text(annotation: Any) -> str:
    """``: string`` -> ``string``."""
    if annotation is None:
        return "any"
    if annotation.type == "type_annotation":
        inner = annotation.named_children
        return _text(inner[0]) if inner else "any"
    return _text(annotation)


def _unquote(literal: str) -> str:
    return literal.strip("'\"`")


def cyclomatic_complexity(node: Any) -> int:
    """1 + number of branching constructs in the subtree."""
    complexity = 1
    for n in _walk(node):
        if n.type in BRANCH_NODES:
            complexity += 1
        elif n.type == "binary_expression":
            op = n.child_by_field_name("operator")
            if op is not None and op.type in SHORT_CIRCUIT_OPERATORS:
                complexity += 1
    return complexity


def nesting_depth(node: Any) -> int:
    """Maximum simultaneous block nesting in the subtree."""
    max_depth = 0
    stack: List[Tuple[Any, int]] = [(node, 0)]
    while stack:
        current, depth = stack.pop()
        if current.type in NESTING_NODES:
            depth += 1
            max_depth = max(max_depth, depth)
        for child in current.children:
            stack.append((child, depth))
    return max_depth


def _parameters(params_node: Any) -> List[ParameterDefinition]:
    params: List[ParameterDefinition] = []
    if params_node is None:
        return params
    for child in params_node.named_children:
        if child.type in ("required_parameter", "optional_parameter"):
            pattern = child.child_by_field_name("pattern")
            value = child.child_by_field_name("value")
            params.append(ParameterDefinition(
                name=_text(pattern),
                type=_type_text(child.child_by_field_name("type")),
                optional=child.type == "optional_parameter",
                default_value=_text(value) if value is not None else None,
            ))
        elif child.type == "assignment_pattern":
            left = child.child_by_field_name("left")
            right = child.child_by_field_name("right")
            params.append(ParameterDefinition(
                name=_text(left), optional=True, default_value=_text(right),
            ))
        elif child.type in ("identifier", "object_pattern", "array_pattern", "rest_pattern"):
            params.append(ParameterDefinition(name=_text(child)))
    return params


def _function_parameters(fn_node: Any) -> List[ParameterDefinition]:
    params = fn_node.child_by_field_name("parameters")
    if params is not None:
        return _parameters(params)
    # arrow functions with a single bare parameter: `x => x * 2`
    single = fn_node.child_by_field_name("parameter")
    return [ParameterDefinition(name=_text(single))] if single is not None else []


def _is_exported(node: Any) -> bool:
    parent = node.parent
    while parent is not None and parent.type in ("lexical_declaration", "variable_declaration"):
        parent = parent.parent
    return parent is not None and parent.type == "export_statement"


def _object_members(body: Any) -> List[PropertyDefinition]:
    members: List[PropertyDefinition] = []
    if body is None:
        return members
    for member in body.named_children:
        if member.type != "property_signature":
            continue
        name = member.child_by_field_name("name")
        if name is None:
            continue
        members.append(PropertyDefinition(
            name=_unquote(_text(name)),
            type=_type_text(member.child_by_field_name("type")),
            optional=_has_token(member, "?"),
        ))
    return members


def _declaration_body(decl: Any) -> Any:
    if decl.type == "interface_declaration":
        return decl.child_by_field_name("body")
    if decl.type == "type_alias_declaration":
        value = decl.child_by_field_name("value")
        if value is not None and value.type == "object_type":
            return value
    return None


# ===================================================================
# Abstract extractor interface
# ===================================================================

class Extractor(ABC):
    """Turns source files into structural units."""

    @abstractmethod
    def extract(
        self,
        directory: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProjectStructure:
        """Parse the tree rooted at *directory*."""
        ...

    @abstractmethod
    def extract_file(
        self,
        file_path: Path,
        source: Optional[str] = None,
        rel_path: Optional[str] = None,
    ) -> SourceUnit:
        """Parse a single file into a :class:`SourceUnit`."""
        ...


# ===================================================================
# Tree-sitter extractor
# ===================================================================

class SourceStructureExtractor(Extractor):
    """Error-tolerant JS/TS extractor.

    Tree-sitter ``Parser`` objects are not shared between threads, so each
    worker lazily builds its own set from the loaded grammars.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        component_idioms: Optional[List[IdiomRule]] = None,
        service_idioms: Optional[List[IdiomRule]] = None,
    ) -> None:
        self.max_workers = max_workers or config.MAX_WORKERS
        self.component_idioms = component_idioms if component_idioms is not None else COMPONENT_IDIOMS
        self.service_idioms = service_idioms if service_idioms is not None else SERVICE_IDIOMS
        self._languages: Dict[str, Language] = {
            "typescript": Language(tree_sitter_typescript.language_typescript()),
            "tsx": Language(tree_sitter_typescript.language_tsx()),
            "javascript": Language(tree_sitter_javascript.language()),
        }
        self._local = threading.local()

    def _parser_for(self, lang: str) -> TSParser:
        parsers = getattr(self._local, "parsers", None)
        if parsers is None:
            parsers = {}
            self._local.parsers = parsers
        if lang not in parsers:
            parsers[lang] = TSParser(self._languages[lang])
        return parsers[lang]

    # ------------------------------------------------------------------
    # Project-level
    # ------------------------------------------------------------------

    def extract(
        self,
        directory: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProjectStructure:
        root = Path(directory)
        structure = ProjectStructure(root=str(root))
        candidates: List[Tuple[Path, str]] = []

        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            rel_dir = os.path.relpath(dirpath, root)
            if rel_dir != ".":
                structure.directories.append(Path(rel_dir).as_posix())
            for filename in sorted(filenames):
                if filename in SKIP_FILES or filename.startswith(".env"):
                    continue
                full = Path(dirpath) / filename
                rel = full.relative_to(root).as_posix()
                structure.files.append(rel)
                if full.suffix in TRACKED_EXTENSIONS:
                    self._record_inventory(full, rel, structure)
                if is_source_path(rel):
                    candidates.append((full, rel))
                elif full.suffix in LANGUAGE_MAP and is_test_path(rel):
                    structure.tests.append(rel)

        units: List[SourceUnit] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {}
            for full, rel in candidates:
                if cancel_event is not None and cancel_event.is_set():
                    break
                futures[executor.submit(self.extract_file, full, None, rel)] = rel
            for future in as_completed(futures):
                rel = futures[future]
                try:
                    units.append(future.result())
                except FileParseError as exc:
                    logger.warning("%s", exc)
                    structure.skipped.append(rel)

        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelled(f"Extraction of {root} cancelled")

        for unit in sorted(units, key=lambda u: u.path):
            if unit.kind == "component":
                structure.components.append(unit)
            elif unit.kind == "service":
                structure.services.append(unit)
            else:
                structure.utilities.append(unit)
        structure.skipped.sort()

        logger.info(
            "Extracted %s: %d components, %d services, %d utilities (%d skipped)",
            root, len(structure.components), len(structure.services),
            len(structure.utilities), len(structure.skipped),
        )
        return structure

    @staticmethod
    def _record_inventory(full: Path, rel: str, structure: ProjectStructure) -> None:
        try:
            data = full.read_bytes()
        except OSError as exc:
            logger.warning("Could not read %s: %s", full, exc)
            return
        structure.checksums[rel] = hashlib.sha256(data).hexdigest()
        structure.line_counts[rel] = data.count(b"\n") + 1 if data else 0

    # ------------------------------------------------------------------
    # File-level
    # ------------------------------------------------------------------

    def extract_file(
        self,
        file_path: Path,
        source: Optional[str] = None,
        rel_path: Optional[str] = None,
    ) -> SourceUnit:
        rel = rel_path or Path(file_path).as_posix()
        lang = LANGUAGE_MAP.get(Path(file_path).suffix)
        if lang is None:
            raise FileParseError(rel, "unsupported file type")
        try:
            if source is None:
                source = Path(file_path).read_text(encoding="utf-8")
            tree = self._parser_for(lang).parse(source.encode("utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise FileParseError(rel, str(exc)) from exc

        root = tree.root_node
        if root.has_error:
            logger.debug("Syntax errors in %s; extracting what parsed", rel)

        try:
            kind = self.classify(rel, source, root)
            if kind == "component":
                return self._component(rel, source, root)
            if kind == "service":
                return self._service(rel, source, root)
            return self._utility(rel, source, root)
        except (AttributeError, IndexError, RecursionError) as exc:
            raise FileParseError(rel, f"{type(exc).__name__}: {exc}") from exc

    def classify(self, rel_path: str, source: str, root: Any = None) -> str:
        lowered = rel_path.lower()
        if "component" in lowered or lowered.endswith((".tsx", ".jsx")):
            return "component"
        if "service" in lowered or "/api/" in f"/{lowered}":
            return "service"
        if re.search(r"from\s+['\"]react['\"]", source) or "React." in source:
            return "component"
        if root is not None and any(n.type in JSX_NODES for n in _walk(root)):
            return "component"
        if SERVICE_CLASS_RE.search(source):
            return "service"
        return "utility"

    # ------------------------------------------------------------------
    # Shared pieces
    # ------------------------------------------------------------------

    @staticmethod
    def _lines(root: Any) -> int:
        return root.end_point[0] + 1

    @staticmethod
    def _imports(root: Any) -> List[ImportStatement]:
        imports: List[ImportStatement] = []
        for stmt in root.named_children:
            if stmt.type != "import_statement":
                continue
            source = stmt.child_by_field_name("source")
            if source is None:
                continue
            imp = ImportStatement(module=_unquote(_text(source)))
            for clause in stmt.named_children:
                if clause.type != "import_clause":
                    continue
                for part in clause.named_children:
                    if part.type == "identifier":
                        imp.names.append(_text(part))
                        imp.is_default = True
                    elif part.type == "namespace_import":
                        ident = [c for c in part.named_children if c.type == "identifier"]
                        if ident:
                            imp.names.append(_text(ident[0]))
                        imp.is_namespace = True
                    elif part.type == "named_imports":
                        for spec in part.named_children:
                            if spec.type == "import_specifier":
                                alias = spec.child_by_field_name("alias")
                                name = spec.child_by_field_name("name")
                                imp.names.append(_text(alias or name))
            imports.append(imp)
        return imports

    @staticmethod
    def _exports(root: Any) -> List[ExportStatement]:
        exports: List[ExportStatement] = []
        for stmt in root.named_children:
            if stmt.type != "export_statement":
                continue
            is_default = _has_token(stmt, "default")
            export_type = "default" if is_default else "named"
            decl = stmt.child_by_field_name("declaration")
            if decl is not None:
                name = _text(decl.child_by_field_name("name"))
                if decl.type in ("function_declaration", "generator_function_declaration"):
                    exports.append(ExportStatement(name or "default", export_type, is_function=True))
                elif decl.type in ("class_declaration", "abstract_class_declaration", "class"):
                    exports.append(ExportStatement(name or "default", export_type, is_class=True))
                elif decl.type == "interface_declaration":
                    exports.append(ExportStatement(name, "named", is_interface=True))
                elif decl.type in ("type_alias_declaration", "enum_declaration"):
                    exports.append(ExportStatement(name, "named", is_type=True))
                elif decl.type in ("lexical_declaration", "variable_declaration"):
                    for declarator in decl.named_children:
                        if declarator.type != "variable_declarator":
                            continue
                        value = declarator.child_by_field_name("value")
                        exports.append(ExportStatement(
                            _text(declarator.child_by_field_name("name")),
                            "named",
                            is_function=value is not None and value.type in FUNCTION_VALUE_NODES,
                        ))
                continue
            value = stmt.child_by_field_name("value")
            if is_default and value is not None:
                name = _text(value) if value.type == "identifier" else _text(value.child_by_field_name("name"))
                exports.append(ExportStatement(
                    name or "default", "default",
                    is_function=value.type in FUNCTION_VALUE_NODES,
                    is_class=value.type == "class",
                ))
                continue
            for clause in stmt.named_children:
                if clause.type != "export_clause":
                    continue
                for spec in clause.named_children:
                    if spec.type == "export_specifier":
                        alias = spec.child_by_field_name("alias")
                        name = spec.child_by_field_name("name")
                        exports.append(ExportStatement(_text(alias or name), "named"))
        return exports

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _component(self, rel: str, source: str, root: Any) -> SourceUnit:
        exports = self._exports(root)
        props = self._props(root)
        hooks = self._hooks(root)
        lines = self._lines(root)
        cyclomatic = cyclomatic_complexity(root)
        depth = nesting_depth(root)
        structural = len(props) + len(hooks)

        named = next((e for e in exports if e.export_type == "default"), None) or next(
            (e for e in exports if e.is_function), None
        )
        name = named.name if named is not None and named.name != "default" else unit_name(rel)

        return SourceUnit(
            path=rel,
            kind="component",
            name=name,
            exports=exports,
            imports=self._imports(root),
            props=props,
            hooks=hooks,
            idioms=detect_idioms(source, self.component_idioms),
            structure_type=self._component_type(root),
            complexity=ComplexityMetrics(
                cyclomatic_complexity=cyclomatic,
                lines_of_code=lines,
                nesting_depth=depth,
                structural_factor=structural,
                secondary_factor=depth,
                score=complexity_score(cyclomatic, lines, structural, depth),
            ),
        )

    @staticmethod
    def _props(root: Any) -> List[PropDefinition]:
        props: List[PropDefinition] = []
        for node in _walk(root):
            if node.type not in ("interface_declaration", "type_alias_declaration"):
                continue
            if "Props" not in _text(node.child_by_field_name("name")):
                continue
            for member in _object_members(_declaration_body(node)):
                props.append(PropDefinition(member.name, member.type, member.optional))
        return props

    @staticmethod
    def _hooks(root: Any) -> List[HookUsage]:
        hooks: List[HookUsage] = []
        for node in _walk(root):
            if node.type != "call_expression":
                continue
            callee = node.child_by_field_name("function")
            if callee is None or callee.type != "identifier":
                continue
            name = _text(callee)
            if HOOK_NAME_RE.match(name):
                hooks.append(HookUsage(
                    name=name,
                    kind="built-in" if name in BUILT_IN_HOOKS else "custom",
                    usage=_text(node)[:120],
                ))
        return hooks

    @staticmethod
    def _component_type(root: Any) -> str:
        for node in _walk(root):
            if node.type == "class_declaration":
                heritage = [c for c in node.children if c.type == "class_heritage"]
                if heritage and "Component" in _text(heritage[0]):
                    return "class"
        if any(n.type in JSX_NODES for n in _walk(root)):
            return "functional"
        return "unknown"

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def _service(self, rel: str, source: str, root: Any) -> SourceUnit:
        imports = self._imports(root)
        methods = self._methods(root)
        dependencies: List[str] = []
        for imp in imports:
            if not imp.module.startswith(".") and imp.module not in dependencies:
                dependencies.append(imp.module)
        lines = self._lines(root)
        cyclomatic = cyclomatic_complexity(root)
        structural = len(methods) + len(dependencies)

        name = unit_name(rel)
        structure_type = "function"
        for stmt in _walk(root):
            if stmt.type == "class_declaration":
                structure_type = "class"
                class_name = _text(stmt.child_by_field_name("name"))
                if "Service" in class_name:
                    name = class_name
                    break
        if structure_type == "function" and re.search(r"export\s+const\s+\w+\s*=\s*\{", source):
            structure_type = "object"

        return SourceUnit(
            path=rel,
            kind="service",
            name=name,
            exports=self._exports(root),
            imports=imports,
            methods=methods,
            dependencies=dependencies,
            idioms=detect_idioms(source, self.service_idioms),
            structure_type=structure_type,
            complexity=ComplexityMetrics(
                cyclomatic_complexity=cyclomatic,
                lines_of_code=lines,
                nesting_depth=nesting_depth(root),
                structural_factor=structural,
                secondary_factor=0,
                score=complexity_score(cyclomatic, lines, structural, 0),
            ),
        )

    @staticmethod
    def _methods(root: Any) -> List[MethodDefinition]:
        methods: List[MethodDefinition] = []
        for node in _walk(root):
            if node.type != "method_definition":
                continue
            name_node = node.child_by_field_name("name")
            if name_node is None:
                continue
            visibility = "public"
            if name_node.type == "private_property_identifier":
                visibility = "private"
            for child in node.children:
                if child.type == "accessibility_modifier":
                    visibility = _text(child)
            methods.append(MethodDefinition(
                name=_text(name_node),
                parameters=_parameters(node.child_by_field_name("parameters")),
                return_type=_type_text(node.child_by_field_name("return_type")),
                is_async=_has_token(node, "async"),
                is_static=_has_token(node, "static"),
                visibility=visibility,
                complexity=cyclomatic_complexity(node),
            ))
        return methods

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _utility(self, rel: str, source: str, root: Any) -> SourceUnit:
        functions = self._functions(root)
        constants = self._constants(root)
        types = self._types(root)
        lines = self._lines(root)
        cyclomatic = cyclomatic_complexity(root)
        average = (
            sum(f.complexity for f in functions) / len(functions) if functions else 0
        )
        return SourceUnit(
            path=rel,
            kind="utility",
            name=unit_name(rel),
            exports=self._exports(root),
            imports=self._imports(root),
            functions=functions,
            constants=constants,
            types=types,
            reusability_score=reusability_score(functions, constants, types),
            complexity=ComplexityMetrics(
                cyclomatic_complexity=cyclomatic,
                lines_of_code=lines,
                nesting_depth=nesting_depth(root),
                structural_factor=len(functions),
                secondary_factor=average,
                score=complexity_score(cyclomatic, lines, len(functions), average),
            ),
        )

    @staticmethod
    def _functions(root: Any) -> List[FunctionDefinition]:
        functions: List[FunctionDefinition] = []
        for node in _walk(root):
            if node.type == "function_declaration":
                fn_node, name = node, _text(node.child_by_field_name("name"))
                exported = _is_exported(node)
            elif node.type == "variable_declarator" and node.parent is not None \
                    and node.parent.parent is not None \
                    and node.parent.parent.type in ("program", "export_statement"):
                value = node.child_by_field_name("value")
                if value is None or value.type not in FUNCTION_VALUE_NODES:
                    continue
                fn_node, name = value, _text(node.child_by_field_name("name"))
                exported = _is_exported(node)
            else:
                continue
            if not name:
                continue
            functions.append(FunctionDefinition(
                name=name,
                parameters=_function_parameters(fn_node),
                return_type=_type_text(fn_node.child_by_field_name("return_type")),
                is_async=_has_token(fn_node, "async"),
                is_exported=exported,
                complexity=cyclomatic_complexity(fn_node),
                purity=function_purity(fn_node),
            ))
        return functions

    @staticmethod
    def _top_level(root: Any) -> Iterator[Tuple[Any, bool]]:
        """Yield top-level declarations together with their export flag."""
        for stmt in root.named_children:
            if stmt.type == "export_statement":
                decl = stmt.child_by_field_name("declaration")
                if decl is not None:
                    yield decl, True
            else:
                yield stmt, False

    def _constants(self, root: Any) -> List[ConstantDefinition]:
        constants: List[ConstantDefinition] = []
        for decl, exported in self._top_level(root):
            if decl.type not in ("lexical_declaration", "variable_declaration"):
                continue
            for declarator in decl.named_children:
                if declarator.type != "variable_declarator":
                    continue
                name = declarator.child_by_field_name("name")
                if name is None or name.type != "identifier":
                    continue
                value = declarator.child_by_field_name("value")
                if value is not None and value.type in FUNCTION_VALUE_NODES:
                    continue
                constants.append(ConstantDefinition(
                    name=_text(name),
                    type=_type_text(declarator.child_by_field_name("type")),
                    value=_text(value)[:200] if value is not None else None,
                    is_exported=exported,
                ))
        return constants

    def _types(self, root: Any) -> List[TypeDefinition]:
        kinds = {
            "interface_declaration": "interface",
            "type_alias_declaration": "type",
            "enum_declaration": "enum",
            "class_declaration": "class",
            "abstract_class_declaration": "class",
        }
        types: List[TypeDefinition] = []
        for decl, exported in self._top_level(root):
            kind = kinds.get(decl.type)
            if kind is None:
                continue
            name = _text(decl.child_by_field_name("name"))
            if not name:
                continue
            types.append(TypeDefinition(
                name=name,
                kind=kind,
                properties=_object_members(_declaration_body(decl)),
                is_exported=exported,
            ))
        return types

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    @staticmethod
    def summarize(structure: ProjectStructure) -> Dict[str, Any]:
        """Aggregate counts, average complexity, idioms and improvement notes."""
        units = structure.units()
        complexities = [u.complexity.cyclomatic_complexity for u in units]
        idioms: List[str] = []
        for unit in units:
            for idiom in unit.idioms:
                if idiom.name not in idioms:
                    idioms.append(idiom.name)

        improvements: List[str] = []
        complex_components = [c for c in structure.components if c.complexity.score == "high"]
        if complex_components:
            improvements.append(
                f"{len(complex_components)} components have high complexity and could be refactored"
            )
        reusable = [u for u in structure.utilities if u.reusability_score > 70]
        if reusable:
            improvements.append(f"{len(reusable)} utilities have high reusability scores")
        modern = [i for i in idioms if i in ("Custom Hooks", "Context API")]
        if modern:
            improvements.append(f"Uses modern React patterns: {', '.join(modern)}")

        return {
            "total_files": len(structure.files),
            "total_components": len(structure.components),
            "total_services": len(structure.services),
            "total_utilities": len(structure.utilities),
            "skipped": len(structure.skipped),
            "average_complexity": sum(complexities) / len(complexities) if complexities else 0,
            "patterns": idioms,
            "improvements": improvements,
        }


# ===================================================================
# Shared heuristics
# ===================================================================

def function_purity(fn_node: Any) -> str:
    """Classify a function as pure / impure / unknown from its text and shape."""
    text = _text(fn_node)
    if any(marker in text for marker in IMPURE_MARKERS):
        return "impure"
    body = fn_node.child_by_field_name("body")
    if body is None:
        return "pure"
    for node in _walk(body):
        if node.type in ("assignment_expression", "augmented_assignment_expression", "update_expression"):
            return "unknown"
    return "pure"


def reusability_score(
    functions: List[FunctionDefinition],
    constants: List[ConstantDefinition],
    types: List[TypeDefinition],
) -> int:
    score = 10 * sum(1 for f in functions if f.purity == "pure")
    exported = (
        sum(1 for f in functions if f.is_exported)
        + sum(1 for c in constants if c.is_exported)
        + sum(1 for t in types if t.is_exported)
    )
    score += 5 * exported
    score += 3 * sum(1 for f in functions if f.complexity < 5)
    return min(100, score)
