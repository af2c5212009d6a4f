# tests/builders.py
"""
Record builders shared by the test modules.

Each helper returns the plain dict the JSON loader accepts, so a test
reads like the declaration stream the upstream front-end would emit.
"""


def param(name, annotation=None, type="char*"):
    rec = {"name": name, "type": type}
    if annotation is not None:
        rec["annotation"] = annotation
    return rec


field = param


def fn(name, params=(), body=None, returns=None, return_type="", line=1, **extra):
    rec = {
        "kind": "function",
        "name": name,
        "params": list(params),
        "file": "unit.c",
        "line": line,
    }
    if returns is not None:
        rec["returns"] = returns
    if return_type:
        rec["return_type"] = return_type
    if body is not None:
        rec["body"] = list(body)
    rec.update(extra)
    return rec


def struct(name, fields, **extra):
    rec = {"kind": "struct", "name": name, "fields": list(fields), "file": "unit.c", "line": 1}
    rec.update(extra)
    return rec


# ── statements ───────────────────────────────────────────────────────────

def decl(name, init=None, annotation=None, type="char*", line=0, **extra):
    rec = {"op": "decl", "name": name, "type": type}
    if init is not None:
        rec["init"] = init
    if annotation is not None:
        rec["annotation"] = annotation
    if line:
        rec["line"] = line
    rec.update(extra)
    return rec


def call(callee, *args, line=0, may_fail=False):
    rec = {"op": "call", "callee": callee, "args": list(args)}
    if may_fail:
        rec["may_fail"] = True
    if line:
        rec["line"] = line
    return rec


def free(target, line=0):
    return call("free", target, line=line)


def use(target, line=0):
    rec = {"op": "use", "target": target}
    if line:
        rec["line"] = line
    return rec


def assign(target, value, line=0):
    rec = {"op": "assign", "target": target, "value": value}
    if line:
        rec["line"] = line
    return rec


def write(target, value=None, line=0):
    rec = {"op": "write", "target": target}
    if value is not None:
        rec["value"] = value
    if line:
        rec["line"] = line
    return rec


def ret(value=None, line=0):
    rec = {"op": "return"}
    if value is not None:
        rec["value"] = value
    if line:
        rec["line"] = line
    return rec


def if_(then=(), orelse=(), cond="c", line=0):
    rec = {"op": "if", "cond": cond, "then": list(then), "else": list(orelse)}
    if line:
        rec["line"] = line
    return rec


def loop(*body, label="", infinite=False, line=0):
    rec = {"op": "loop", "body": list(body)}
    if label:
        rec["label"] = label
    if infinite:
        rec["infinite"] = True
    if line:
        rec["line"] = line
    return rec


def simple(op, line=0, **extra):
    rec = {"op": op}
    if line:
        rec["line"] = line
    rec.update(extra)
    return rec


def alloc(allocator="malloc"):
    return {"alloc": allocator}


def invoke(callee, *args, may_fail=False):
    rec = {"call": callee, "args": list(args)}
    if may_fail:
        rec["may_fail"] = True
    return rec


def const(text):
    return {"const": text}


# ── the worked example from the annotation header ────────────────────────

def example_records():
    """``struct Example`` with its constructor, destructor and a caller."""
    return [
        struct("Example", [
            field("name", "guarded"),
            field("id", "owner"),
        ]),
        fn("example_new",
           [param("name", "guarded"), param("id", "take_possession")],
           returns="owner", return_type="struct Example*", line=10,
           body=[
               decl("ex", alloc(), annotation="owner", type="struct Example*", line=11),
               assign("ex.name", "name", line=12),
               assign("ex.id", "id", line=13),
               ret("ex", line=14),
           ]),
        fn("example_delete",
           [param("ex", "take_possession", type="struct Example*")], line=20,
           body=[
               free("ex.id", line=21),
               free("ex", line=22),
           ]),
        fn("h", line=30, body=[
            decl("id", alloc(), line=31),
            decl("ex", invoke("example_new", const("static-name"), "id"),
                 type="struct Example*", line=32),
            call("example_delete", "ex", line=33),
        ]),
    ]
