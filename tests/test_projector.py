from collections.abc import Callable

import pytest

import projgen

PROJECTION_XML = """
<namespace name="Ns">
  <delegate name="CALLBACK" returns="i4"><param name="ctx" type="void*"/></delegate>
  <interface name="IWidget" base="Windows.Win32.System.Com.IUnknown">
    <method name="Spin" returns="Windows.Win32.Foundation.HRESULT"/>
  </interface>
  <struct name="HOOK"><field name="cb" type="CALLBACK"/><field name="id" type="u4"/></struct>
  <struct name="HOOK_LIST"><field name="first" type="HOOK*"/><field name="count" type="u4"/></struct>
  <struct name="ID_SLOTS"><field name="ids" type="u4[4]"/></struct>
  <union name="VALUE"><field name="i" type="i4"/><field name="f" type="r4"/></union>
  <function name="InstallHook" module="HOOKS.dll">
    <param name="hook" type="const HOOK*" in="true"/>
  </function>
  <function name="ReadHook" module="HOOKS.dll">
    <param name="hook" type="HOOK*" out="true"/>
  </function>
  <function name="GetWidgets" module="HOOKS.dll">
    <param name="widgets" type="IWidget*" out="true" count-param="1"/>
    <param name="count" type="u4" in="true"/>
  </function>
  <function name="CreateWidget" module="HOOKS.dll">
    <param name="widget" type="IWidget*" out="true"/>
  </function>
  <function name="Fingerprint" module="HOOKS.dll">
    <param name="digest" type="u1[16]" in="true"/>
  </function>
  <function name="Query" module="HOOKS.dll">
    <param name="riid" type="const System.Guid*" in="true"/>
    <param name="ppv" type="void**" out="true" com-out-ptr="true"/>
  </function>
  <function name="SetName" module="HOOKS.dll">
    <param name="name" type="Windows.Win32.Foundation.PWSTR" in="true" const="true"/>
  </function>
  <function name="Broken" module="HOOKS.dll">
    <param name="x" type="void" in="true"/>
  </function>
</namespace>
"""


def _declarations(generator: projgen.Generator, cls: type) -> list[object]:
    return [d for d in generator.ledger.committed_declarations() if isinstance(d, cls)]


def _extern(generator: projgen.Generator, name: str) -> projgen.ExternMethodDecl:
    for decl in _declarations(generator, projgen.ExternMethodDecl):
        if decl.name == name:
            return decl
    raise AssertionError(f"{name} was not committed")


def _struct(generator: projgen.Generator, name: str) -> projgen.StructDecl:
    for decl in _declarations(generator, projgen.StructDecl):
        if decl.name == name:
            return decl
    raise AssertionError(f"{name} was not committed")


@pytest.mark.parametrize(
    ("code", "target"),
    [("u4", "uint"), ("isize", "nint"), ("char", "char"), ("r8", "double"), ("void", "void")],
)
def test_primitives_project_to_target_names(
    make_generator: Callable[..., projgen.Generator], code: str, target: str
) -> None:
    generator = make_generator()

    result = generator.projector.project(
        projgen.PrimitiveType(code), generator.default_context
    )

    assert result.target_type == projgen.NamedType(target)
    assert result.marshal_as is None


def test_unknown_primitive_code_is_structural_failure(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator()

    with pytest.raises(projgen.StructuralFailure):
        generator.projector.project(projgen.PrimitiveType("u128"), generator.default_context)


def test_void_parameter_is_structural_failure(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    with pytest.raises(projgen.StructuralFailure, match="void"):
        generator.request_by_name("Broken")


def test_managed_struct_pointer_becomes_modifier_under_marshaling(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("InstallHook")
    generator.request_by_name("ReadHook")

    install = _extern(generator, "InstallHook").params[0]
    read = _extern(generator, "ReadHook").params[0]
    assert (install.modifier, install.type) == ("in", projgen.NamedType("HOOK", "Ns"))
    assert (read.modifier, read.type) == ("out", projgen.NamedType("HOOK", "Ns"))

    hook = _struct(generator, "HOOK")
    assert hook.fields[0].type == projgen.NamedType("CALLBACK", "Ns")
    assert hook.fields[0].marshal_as == projgen.MarshalAs("FunctionPtr")
    assert _declarations(generator, projgen.DelegateDecl)


def test_raw_style_keeps_pointers_and_function_pointers(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML, allow_marshaling=False)

    generator.request_by_name("InstallHook")

    param = _extern(generator, "InstallHook").params[0]
    assert param.modifier is None
    assert param.type == projgen.PointerTo(projgen.NamedType("HOOK", "Ns"))
    hook = _struct(generator, "HOOK")
    assert hook.fields[0].type == projgen.FunctionPointerOf(
        (projgen.PointerTo(projgen.VOID_TYPE),), projgen.INT_TYPE
    )
    assert not _declarations(generator, projgen.DelegateDecl)


def test_field_pointer_to_managed_struct_requests_unmanaged_variant(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("HOOK_LIST")

    hook_list = _struct(generator, "HOOK_LIST")
    assert hook_list.fields[0].type == projgen.PointerTo(projgen.NamedType("HOOK_unmanaged", "Ns"))
    assert projgen.EntityKey(projgen.KIND_TYPE, "Ns", "HOOK", unmanaged=True) in generator.ledger
    assert projgen.EntityKey(projgen.KIND_TYPE, "Ns", "HOOK") not in generator.ledger
    unmanaged = _struct(generator, "HOOK_unmanaged")
    assert unmanaged.native_name == "HOOK"
    assert isinstance(unmanaged.fields[0].type, projgen.FunctionPointerOf)


def test_native_array_of_interfaces_marshals_as_lparray(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("GetWidgets")

    param = _extern(generator, "GetWidgets").params[0]
    assert param.type == projgen.ArrayOf(projgen.NamedType("IWidget", "Ns"))
    assert param.marshal_as == projgen.MarshalAs(
        "LPArray", array_sub_type="Interface", size_param_index=1
    )


def test_out_interface_uses_modifier_or_raw_pointer(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    marshaled = make_generator(PROJECTION_XML)
    raw_pointers = make_generator(
        PROJECTION_XML,
        com_interop=projgen.ComInteropOptions(use_raw_pointers_for_out_interfaces=True),
    )

    marshaled.request_by_name("CreateWidget")
    raw_pointers.request_by_name("CreateWidget")

    param = _extern(marshaled, "CreateWidget").params[0]
    assert (param.modifier, param.type) == ("out", projgen.NamedType("IWidget", "Ns"))
    assert param.marshal_as == projgen.MarshalAs("Interface")
    raw_param = _extern(raw_pointers, "CreateWidget").params[0]
    assert (raw_param.modifier, raw_param.type) == ("out", projgen.NINT_TYPE)


def test_fixed_length_parameter_array_becomes_pointer_with_length(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    result = generator.projector.project(
        projgen.parse_type_signature("u1[16]"), generator.default_context
    )

    assert result.target_type == projgen.PointerTo(projgen.BYTE_TYPE)
    assert result.native_array == projgen.NativeArrayInfo(count_const=16)


def test_com_out_pointer_projects_to_object_and_guid_is_substituted(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("Query")

    riid, ppv = _extern(generator, "Query").params
    assert riid.type == projgen.PointerTo(projgen.NamedType("Guid", "System"))
    assert ppv.type == projgen.OBJECT_TYPE
    assert ppv.marshal_as == projgen.MarshalAs("IUnknown")


def test_const_string_uses_special_read_only_type(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("SetName")

    param = _extern(generator, "SetName").params[0]
    assert param.type == projgen.NamedType("PCWSTR", "Windows.Win32.Foundation")
    special_key = projgen.EntityKey(projgen.KIND_SPECIAL, "Windows.Win32.Foundation", "PCWSTR")
    assert special_key in generator.ledger
    pwstr_key = projgen.EntityKey(projgen.KIND_TYPE, "Windows.Win32.Foundation", "PWSTR")
    assert pwstr_key not in generator.ledger


def test_custom_substitution_tables_replace_types(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    tables = projgen.SubstitutionTables(
        types={"Windows.Win32.Foundation.RECT": projgen.NamedType("Rectangle", "System.Drawing")}
    )
    generator = make_generator(generator_kwargs={"substitutions": tables})

    with generator._transaction():
        result = generator.projector.project(
            projgen.parse_type_signature("Windows.Win32.Foundation.RECT"),
            generator.default_context,
        )

    assert result.target_type == projgen.NamedType("Rectangle", "System.Drawing")
    assert len(generator.ledger) == 0


def test_union_fields_share_offset_zero(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(PROJECTION_XML)

    generator.request_by_name("VALUE")

    value = _struct(generator, "VALUE")
    assert value.is_union is True
    assert value.explicit_layout is True
    assert [f.offset for f in value.fields] == [0, 0]


def test_target_type_rendering() -> None:
    span = projgen.SpanOf(projgen.NamedType("RECT"), readonly=True)
    fn = projgen.FunctionPointerOf((projgen.NINT_TYPE,), projgen.VOID_TYPE)

    assert str(span) == "ReadOnlySpan<RECT>"
    assert str(projgen.NullableOf(projgen.INT_TYPE)) == "int?"
    assert str(projgen.PointerTo(projgen.PointerTo(projgen.VOID_TYPE))) == "void**"
    assert str(fn) == "delegate* unmanaged[Stdcall]<nint, void>"


EXPLICIT_XML = """
<namespace name="Ns">
  <delegate name="CB" returns="void"><param name="ctx" type="void*"/></delegate>
  <struct name="EXPL" layout="explicit"><field name="cb" type="CB"/><field name="n" type="i4"/></struct>
  <struct name="LINK"><field name="e" type="EXPL*"/></struct>
  <function name="Use" module="X.dll"><param name="e" type="EXPL*" in="true"/></function>
</namespace>
"""


def test_explicit_layout_struct_is_projected_blittable_everywhere(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(EXPLICIT_XML)

    generator.request_by_name("Use")
    generator.request_by_name("LINK")

    param = _extern(generator, "Use").params[0]
    assert param.modifier is None
    assert param.type == projgen.PointerTo(projgen.NamedType("EXPL", "Ns"))
    assert _struct(generator, "LINK").fields[0].type == projgen.PointerTo(
        projgen.NamedType("EXPL", "Ns")
    )
    assert [s.name for s in _declarations(generator, projgen.StructDecl)].count("EXPL") == 1
    assert projgen.EntityKey(projgen.KIND_TYPE, "Ns", "EXPL", unmanaged=True) not in generator.ledger
    expl = _struct(generator, "EXPL")
    assert expl.fields[0].type == projgen.FunctionPointerOf(
        (projgen.PointerTo(projgen.VOID_TYPE),), projgen.VOID_TYPE
    )
