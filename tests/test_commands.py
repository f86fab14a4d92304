import pytest

from execbox.core.errors import UnsupportedLanguageError, ValidationError
from execbox.core.models import ProjectFile
from execbox.runner.commands import build_command

BASE = "/workspace/s1"


def pf(path, text=""):
    return ProjectFile(path, text.encode())


def test_python_runs_unbuffered_from_workspace():
    cmd = build_command("python", [pf("main.py")], "main.py", base_dir=BASE)
    assert cmd == ("cd /workspace/s1 && PYTHONPATH=/workspace/s1 "
                   "PYTHONUSERBASE=/workspace/s1/.pyuser python3 -u main.py")


def test_javascript_alias():
    cmd = build_command("js", [pf("app/index.js")], "app/index.js", base_dir=BASE)
    assert cmd.endswith("node app/index.js")


def test_java_uses_first_public_class():
    src = "import java.util.*;\npublic class Solver { public static void main(String[] a) {} }\n"
    files = [pf("Solver.java", src), pf("util/Helper.java", "class Helper {}")]
    cmd = build_command("java", files, "Solver.java", base_dir=BASE)
    assert "javac -cp '.:lib/*' -d . Solver.java util/Helper.java" in cmd
    assert cmd.endswith("java -cp '.:lib/*' Solver")


def test_java_defaults_to_main():
    cmd = build_command("java", [pf("Main.java", "class Main {}")], "Main.java", base_dir=BASE)
    assert cmd.endswith(" Main")


def test_java_package_and_explicit_class():
    src = "package com.acme;\npublic final class App {}\n"
    files = [pf("com/acme/App.java", src)]
    assert build_command("java", files, "com/acme/App.java", base_dir=BASE).endswith(" com.acme.App")
    assert build_command("java", files, "com/acme/App.java", base_dir=BASE,
                         main_class="com.acme.Other").endswith(" com.acme.Other")


def test_cpp_compiles_every_source_once_and_links_libraries():
    files = [pf("main.cpp"), pf("src/util.cc"), pf("util.h")]
    libs = [ProjectFile("lib/libfoo.so", b""), ProjectFile("lib/libbar.a", b""), ProjectFile("include/foo.h", b"")]
    cmd = build_command("c++", files, "main.cpp", base_dir=BASE, libraries=libs)
    assert cmd.count("g++") == 1
    assert "g++ -std=c++20 -I. -Iinclude -Llib main.cpp src/util.cc -lfoo -lbar -o a.out" in cmd
    assert cmd.endswith("LD_LIBRARY_PATH=./lib ./a.out")


def test_submitted_sources_under_lib_and_build_are_compiled():
    files = [pf("main.cpp"), pf("lib/helper.cpp"), pf("build/gen.cpp")]
    libs = [ProjectFile("lib/libfoo.so", b"")]
    cmd = build_command("cpp", files, "main.cpp", base_dir=BASE, libraries=libs)
    assert "-Llib build/gen.cpp lib/helper.cpp main.cpp -lfoo -o a.out" in cmd

    files = [pf("Main.java", "public class Main {}"), pf("lib/Util.java", "class Util {}")]
    cmd = build_command("java", files, "Main.java", base_dir=BASE)
    assert "-d . Main.java lib/Util.java" in cmd


def test_file_names_are_quoted():
    cmd = build_command("python", [pf("my script.py")], "my script.py", base_dir=BASE)
    assert cmd.endswith("python3 -u 'my script.py'")
    cmd = build_command("cpp", [pf("a;rm -rf x.cpp")], "a;rm -rf x.cpp", base_dir=BASE)
    assert "'a;rm -rf x.cpp'" in cmd


def test_go_module_and_loose_files():
    assert "go build -o app . && ./app" in build_command(
        "go", [pf("go.mod"), pf("main.go")], "main.go", base_dir=BASE)
    cmd = build_command("golang", [pf("main.go"), pf("util.go"), pf("x_test.go")], "main.go", base_dir=BASE)
    assert "go build -o app main.go util.go && ./app" in cmd


def test_compiled_language_without_sources():
    with pytest.raises(ValidationError):
        build_command("java", [pf("README.md")], "README.md", base_dir=BASE)


def test_unsupported_language():
    with pytest.raises(UnsupportedLanguageError):
        build_command("cobol", [pf("main.cob")], "main.cob", base_dir=BASE)
