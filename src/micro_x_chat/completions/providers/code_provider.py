from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from micro_x_chat.completions.providers.base import CompletionProvider
from micro_x_chat.completions.types import CompletionContext, CompletionItem


@dataclass(frozen=True)
class LanguageConfig:
    name: str
    extensions: tuple[str, ...]
    keywords: tuple[str, ...]
    patterns: tuple[str, ...]


LANGUAGES: dict[str, LanguageConfig] = {
    "rust": LanguageConfig(
        name="Rust",
        extensions=("rs",),
        keywords=(
            "fn", "let", "mut", "const", "static", "struct", "enum", "impl", "trait",
            "pub", "use", "mod", "crate", "super", "self", "Self", "match", "if", "else",
            "while", "for", "loop", "break", "continue", "return", "async", "await",
            "unsafe", "extern", "type", "where", "dyn", "ref", "move", "Box", "Vec",
            "String", "str", "u8", "u16", "u32", "u64", "i8", "i16", "i32", "i64",
            "f32", "f64", "bool", "char", "usize", "isize", "Option", "Result",
            "Some", "None", "Ok", "Err", "derive", "Debug", "Clone", "Copy",
        ),
        patterns=(
            "println!", "eprintln!", "dbg!", "todo!", "unimplemented!", "unreachable!",
            "vec!", "format!", "assert!", "assert_eq!", "assert_ne!",
            "#[derive(", "#[cfg(", "#[allow(", "#[warn(", "#[deny(",
            "std::", "use std::", "impl<", "fn main(", "pub fn", "async fn",
        ),
    ),
    "python": LanguageConfig(
        name="Python",
        extensions=("py", "pyw"),
        keywords=(
            "def", "class", "if", "elif", "else", "for", "while", "try", "except",
            "finally", "with", "as", "import", "from", "return", "yield", "lambda",
            "and", "or", "not", "in", "is", "True", "False", "None", "pass", "break",
            "continue", "global", "nonlocal", "assert", "del", "raise", "async", "await",
        ),
        patterns=(
            "print(", "len(", "range(", "enumerate(", "zip(", "list(", "dict(",
            "str(", "int(", "float(", "bool(", "type(", "isinstance(", "hasattr(",
            "if __name__ == '__main__':", "def __init__(self", "import os", "import sys",
            "from typing import", "from collections import", "import json", "import re",
        ),
    ),
    "javascript": LanguageConfig(
        name="JavaScript",
        extensions=("js", "jsx", "mjs"),
        keywords=(
            "function", "const", "let", "var", "if", "else", "for", "while", "do",
            "switch", "case", "default", "break", "continue", "return", "try", "catch",
            "finally", "throw", "new", "this", "super", "class", "extends", "static",
            "async", "await", "import", "export", "from", "as", "typeof", "instanceof",
            "true", "false", "null", "undefined", "void", "delete", "in", "of",
        ),
        patterns=(
            "console.log(", "console.error(", "console.warn(", "JSON.stringify(",
            "JSON.parse(", "Array.from(", "Object.keys(", "Object.values(",
            "Promise.resolve(", "Promise.reject(", "async function", "=> {",
            "import React from", "export default", "module.exports", "require(",
        ),
    ),
    "typescript": LanguageConfig(
        name="TypeScript",
        extensions=("ts", "tsx"),
        keywords=(
            "interface", "type", "enum", "namespace", "module", "declare", "abstract",
            "implements", "public", "private", "protected", "readonly", "static",
            "string", "number", "boolean", "object", "any", "unknown", "never", "void",
            "Array", "Promise", "Record", "Partial", "Required", "Pick", "Omit",
        ),
        patterns=(
            "interface ", "type ", "enum ", "declare ", "export interface",
            "export type", "as const", ": string", ": number", ": boolean",
            "Array<", "Promise<", "Record<", "Partial<", "keyof ", "typeof ",
        ),
    ),
    "go": LanguageConfig(
        name="Go",
        extensions=("go",),
        keywords=(
            "package", "import", "func", "var", "const", "type", "struct", "interface",
            "if", "else", "for", "range", "switch", "case", "default", "fallthrough",
            "break", "continue", "return", "go", "defer", "select", "chan", "map",
            "make", "new", "len", "cap", "append", "copy", "close", "delete",
            "panic", "recover", "nil", "true", "false", "iota",
        ),
        patterns=(
            "func main(", "func (", "package main", "import (", "fmt.Println(",
            "fmt.Printf(", "log.Fatal(", "log.Println(", "if err != nil",
            "make([]", "make(map[", "make(chan", ":= range", "go func(",
        ),
    ),
}

RUST_STD_MODULES = (
    "std::collections", "std::fs", "std::io", "std::env",
    "std::thread", "std::sync", "std::net", "std::path",
)
RUST_WRAPPER_METHODS = (
    "unwrap()", "expect()", "unwrap_or()", "unwrap_or_else()",
    "map()", "and_then()", "or_else()", "is_some()", "is_none()",
)
PYTHON_MODULES = (
    "os", "sys", "json", "re", "datetime", "collections",
    "itertools", "functools", "typing", "pathlib",
)
PYTHON_DUNDER_METHODS = (
    "__init__", "__str__", "__repr__", "__len__",
    "__getitem__", "__setitem__", "__contains__",
)
JS_PACKAGES = ("react", "lodash", "axios", "express", "moment", "uuid", "crypto", "path", "fs", "util")
JS_ARRAY_METHODS = (
    "map()", "filter()", "reduce()", "forEach()", "find()",
    "some()", "every()", "includes()", "indexOf()", "slice()",
)
GO_FMT_FUNCTIONS = ("Println()", "Printf()", "Print()", "Sprintf()", "Errorf()", "Fprintf()", "Scanf()", "Sscanf()")

_KEYWORD_VOTES = 2


def detect_language(context: CompletionContext) -> LanguageConfig | None:
    """Explicit language first, then file-extension mentions, then a keyword vote."""
    if context.language:
        return LANGUAGES.get(context.language.lower())

    text = context.text
    for config in LANGUAGES.values():
        if any(re.search(rf"\.{ext}\b", text) for ext in config.extensions):
            return config

    words = text.split()
    for config in LANGUAGES.values():
        if sum(1 for word in words if word in config.keywords) >= _KEYWORD_VOTES:
            return config
    return None


def _table(entries, query: str, provider: str, description: str, score: float, *, contains: bool = False):
    matches = (lambda e: query.lower() in e.lower()) if contains else (lambda e: e.startswith(query))
    return [CompletionItem(e, e, provider, description=description, score=score) for e in entries if matches(e)]


class CodeProvider(CompletionProvider):
    name = "code"

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        language = detect_language(context)
        if language is None:
            logger.debug("No language detected for code completion")
            return []

        query = context.current_word().lower()
        items = [
            CompletionItem(keyword, keyword, "keyword", description=f"{language.name} keyword", score=0.8)
            for keyword in language.keywords
            if keyword.lower().startswith(query)
        ]
        for pattern in language.patterns:
            lowered = pattern.lower()
            if query in lowered:
                items.append(
                    CompletionItem(
                        pattern,
                        pattern,
                        "pattern",
                        description=f"{language.name} pattern",
                        score=0.9 if lowered.startswith(query) else 0.6,
                    )
                )
        items.extend(self._context_completions(context, language))
        return items

    def _context_completions(self, context: CompletionContext, language: LanguageConfig) -> list[CompletionItem]:
        text = context.text
        query = context.current_word()
        items: list[CompletionItem] = []

        if language.name == "Rust":
            if "use " in text and "::" not in text:
                items += _table(RUST_STD_MODULES, query, "module", "Standard library module", 0.7, contains=True)
            if "Result<" in text or "Option<" in text:
                items += _table(RUST_WRAPPER_METHODS, query, "method", "Result/Option method", 0.8)
        elif language.name == "Python":
            if "import " in text:
                items += _table(PYTHON_MODULES, query, "module", "Python module", 0.7)
            if "self." in text:
                items += _table(PYTHON_DUNDER_METHODS, query, "method", "Special method", 0.8)
        elif language.name in ("JavaScript", "TypeScript"):
            if "import " in text or "from " in text:
                items += _table(JS_PACKAGES, query, "package", "NPM package", 0.7)
            if "Array." in text or "[]." in text:
                items += _table(JS_ARRAY_METHODS, query, "method", "Array method", 0.8)
        elif language.name == "Go":
            if "fmt." in text:
                items += _table(GO_FMT_FUNCTIONS, query, "function", "fmt package function", 0.8)
        return items

    def is_applicable(self, context: CompletionContext) -> bool:
        return detect_language(context) is not None

    def get_priority(self, context: CompletionContext) -> int:
        return 12

    def cache_ttl(self) -> float | None:
        return 600.0
