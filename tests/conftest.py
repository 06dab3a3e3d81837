import argparse
import sys
import xml.etree.ElementTree as ET
from collections.abc import Callable
from pathlib import Path

import pytest

import projgen

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

SAMPLE_METADATA = PROJECT_DIR / "metadata" / "win32.xml"

FOUNDATION_XML = """
<namespace name="Windows.Win32.Foundation">
  <struct name="HANDLE" typedef="true" release="CloseHandle" invalid="-1,0">
    <field name="Value" type="isize"/>
  </struct>
  <struct name="HWND" typedef="true"><field name="Value" type="isize"/></struct>
  <struct name="BOOL" typedef="true"><field name="Value" type="i4"/></struct>
  <struct name="HRESULT" typedef="true"><field name="Value" type="i4"/></struct>
  <struct name="PWSTR" typedef="true"><field name="Value" type="char*"/></struct>
  <struct name="PSTR" typedef="true"><field name="Value" type="u1*"/></struct>
  <struct name="RECT">
    <field name="left" type="i4"/>
    <field name="top" type="i4"/>
    <field name="right" type="i4"/>
    <field name="bottom" type="i4"/>
  </struct>
  <enum name="WIN32_ERROR" base="u4">
    <member name="ERROR_SUCCESS" value="0"/>
  </enum>
  <function name="CloseHandle" module="KERNEL32.dll" returns="BOOL" set-last-error="true">
    <param name="hObject" type="HANDLE" in="true"/>
  </function>
</namespace>
<namespace name="Windows.Win32.System.Com">
  <interface name="IUnknown" guid="00000000-0000-0000-c000-000000000046">
    <method name="QueryInterface" returns="Windows.Win32.Foundation.HRESULT">
      <param name="riid" type="const System.Guid*" in="true"/>
      <param name="ppvObject" type="void**" out="true" com-out-ptr="true"/>
    </method>
    <method name="AddRef" returns="u4"/>
    <method name="Release" returns="u4"/>
  </interface>
</namespace>
"""
"""Shared Foundation and COM base declarations prepended to test metadata."""


@pytest.fixture
def existing_paths(tmp_path: Path) -> dict[str, Path]:
    metadata = tmp_path / "win32.xml"
    metadata.write_text("<metadata />\n", encoding="utf-8")

    requests_file = tmp_path / "NativeMethods.txt"
    requests_file.write_text("CreateFileW\n", encoding="utf-8")

    options = tmp_path / "NativeMethods.json"
    options.write_text("{}\n", encoding="utf-8")

    return {
        "metadata": metadata,
        "requests_file": requests_file,
        "options": options,
    }


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing"


@pytest.fixture
def make_args(existing_paths: dict[str, Path]) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "metadata": [existing_paths["metadata"]],
            "request": None,
            "requests_file": None,
            "options": None,
            "platform": None,
            "docs": None,
            "templates": None,
            "manifest": None,
            "suggest": None,
            "list_namespaces": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_metadata_root() -> Callable[[str], ET.Element]:
    def _make_metadata_root(inner_xml: str) -> ET.Element:
        return ET.fromstring(f"<metadata>{inner_xml}</metadata>")

    return _make_metadata_root


@pytest.fixture
def make_index(
    make_metadata_root: Callable[[str], ET.Element],
) -> Callable[..., projgen.MetadataIndex]:
    def _make_index(inner_xml: str = "", include_foundation: bool = True) -> projgen.MetadataIndex:
        prefix = FOUNDATION_XML if include_foundation else ""
        return projgen.MetadataIndex.from_xml(make_metadata_root(prefix + inner_xml))

    return _make_index


@pytest.fixture
def make_generator(
    make_index: Callable[..., projgen.MetadataIndex],
) -> Callable[..., projgen.Generator]:
    def _make_generator(
        inner_xml: str = "",
        *,
        include_foundation: bool = True,
        generator_kwargs: dict[str, object] | None = None,
        **option_overrides: object,
    ) -> projgen.Generator:
        index = make_index(inner_xml, include_foundation)
        options = projgen.GeneratorOptions(**option_overrides)
        return projgen.Generator(index, options, **(generator_kwargs or {}))

    return _make_generator


@pytest.fixture
def sample_index() -> projgen.MetadataIndex:
    return projgen.load_metadata_index([SAMPLE_METADATA])


@pytest.fixture
def sample_generator(
    sample_index: projgen.MetadataIndex,
) -> Callable[..., projgen.Generator]:
    def _sample_generator(**option_overrides: object) -> projgen.Generator:
        return projgen.Generator(sample_index, projgen.GeneratorOptions(**option_overrides))

    return _sample_generator
