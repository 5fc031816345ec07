import io
import os
import re
from pathlib import Path

import pytest

from py_util import Log
from py_macros import *
from py_config import Config, ConfigError
from py_preprocessor import *

class Run:
    " result of preprocessing a text in memory "
    def __init__(self,outcome:ProcessOutcome,output:str,log:Log,out:io.StringIO,err:io.StringIO):
        self.outcome=outcome
        self.output=output
        self.log=log
        self.out=out.getvalue()
        self.err=err.getvalue()

def make_preprocessor(config:Config|None=None,macros:MacroTable|None=None,environ:dict|None=None,**log_flags)->tuple[Preprocessor,io.StringIO,io.StringIO]:
    out=io.StringIO()
    err=io.StringIO()
    log=Log(out=out,err=err,**log_flags)
    preprocessor=Preprocessor(
        config,
        macros=macros if macros is not None else MacroTable(),
        log=log,
        environ=environ if environ is not None else {},
    )
    return preprocessor,out,err

def run_text(lines:list[str],config:Config|None=None,macros:MacroTable|None=None,**log_flags)->Run:
    preprocessor,out,err=make_preprocessor(config,macros,**log_flags)
    writer=io.StringIO()
    outcome=preprocessor.process_stream(io.StringIO("".join(lines)),writer,"test.pypp")
    return Run(outcome,writer.getvalue(),preprocessor.log,out,err)

def run_case(lines:list[str],expected:str,**kwargs)->Run:
    ret=run_text(lines,**kwargs)
    assert ret.output==expected
    assert ret.outcome==ProcessOutcome.PROCESSED, ret.err
    return ret

def test_define_and_substitute():
    run_case([
        "#define GREETING Hello\n",
        "$(GREETING), World!\n",
    ],"Hello, World!\n")

def test_if_else():
    run_case([
        "#if 1 == 2\n",
        "A\n",
        "#else\n",
        "B\n",
        "#endif\n",
    ],"B\n")

def test_elif_chain():
    run_case([
        "#define X 5\n",
        "#if X > 10\n",
        "big\n",
        "#elif X > 3\n",
        "medium\n",
        "#else\n",
        "small\n",
        "#endif\n",
    ],"medium\n")

def test_elif_first_branch_taken():
    run_case([
        "#if 1\n",
        "one\n",
        "#elif 1\n",
        "two\n",
        "#elseif 1\n",
        "three\n",
        "#else\n",
        "four\n",
        "#endif\n",
        "after\n",
    ],"one\nafter\n")

def test_elif_falls_through_to_else():
    run_case([
        "#if 0\n",
        "one\n",
        "#elif 0\n",
        "two\n",
        "#ELSEIF 0\n",
        "three\n",
        "#else\n",
        "four\n",
        "#endif\n",
    ],"four\n")

def test_ifdef_undefined():
    run_case([
        "#ifdef FOO\n",
        "yes\n",
        "#else\n",
        "no\n",
        "#endif\n",
    ],"no\n")

def test_ifndef():
    run_case([
        "#ifndef FOO\n",
        "#define FOO 1\n",
        "#endif\n",
        "#ifndef FOO\n",
        "twice\n",
        "#endif\n",
        "$(FOO)\n",
    ],"1\n")

def test_ifdef_argument_is_substituted():
    run_case([
        "#define NAME FOO\n",
        "#define FOO\n",
        "#ifdef $(NAME)\n",
        "yes\n",
        "#endif\n",
    ],"yes\n")

def test_nested_conditionals():
    run_case([
        "#if 0\n",
        "#if 1\n",
        "inner\n",
        "#else\n",
        "inner else\n",
        "#endif\n",
        "skipped\n",
        "#else\n",
        "taken\n",
        "#endif\n",
    ],"taken\n")

def test_defined_changes_after_define():
    run_case([
        "#if defined(X)\n",
        "before\n",
        "#endif\n",
        "#define X\n",
        "#if defined(X)\n",
        "after\n",
        "#endif\n",
    ],"after\n")

def test_disabled_blocks_do_not_define():
    run_case([
        "#if 0\n",
        "#define X 1\n",
        "#undef NOT_DEFINED\n",
        "#error not reached\n",
        "#include nothing\n",
        "#endif\n",
        "#ifdef X\n",
        "defined\n",
        "#endif\n",
    ],"")

def test_disabled_blocks_tolerate_undefined_macros():
    run_case([
        "#if 0\n",
        "#if UNDEFINED > 1\n",
        "#endif\n",
        "#endif\n",
        "ok\n",
    ],"ok\n")

def test_if_modes():
    run_case([
        "#define V 10\n",
        "#ifnum V > 9\n",
        "num\n",
        "#endif\n",
        "#ifstr '$(V)' < '9'\n",
        "str\n",
        "#endif\n",
        "#ifistr 'ABC' == 'abc'\n",
        "istr\n",
        "#endif\n",
    ],"num\nstr\nistr\n")

def test_define_without_value():
    run_case([
        "#define EMPTY\n",
        "[$(EMPTY)]\n",
    ],"[]\n")

def test_define_value_is_substituted():
    run_case([
        "#define A 1\n",
        "#define B $(A)+$(A)\n",
        "#undef A\n",
        "$(B)\n",
    ],"1+1\n")

def test_define_wrong_syntax():
    ret=run_text(["#define 1abc 2\n","text\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="text\n"
    assert "Wrong syntax for '#define'" in ret.err

def test_undef():
    run_case([
        "#define X 1\n",
        "#undef X\n",
        "#ifdef X\n",
        "still\n",
        "#endif\n",
    ],"")

def test_undef_of_undefined_macro():
    ret=run_text(["#undef NOPE\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert "Trying to undefine variable 'NOPE' which is not defined!" in ret.err

    run_case(["#undef NOPE\n"],"",config=Config(ignore_undefined=True))

def test_pass_through_and_comments():
    run_case([
        "##!/usr/bin/env python3\n",
        "#* not emitted\n",
        "  ## if kept $(X)\n",
        "code\n",
    ],"#!/usr/bin/env python3\n# if kept $(X)\ncode\n")

def test_empty_lines_are_kept():
    run_case(["a\n","\n","b\n"],"a\n\nb\n")

def test_line_without_terminator():
    run_case(["a\n","b"],"a\nb\n")

def test_predefined_variables():
    ret=run_text([
        "$(__LINE__) $(__FILE__)\n",
        "\n",
        "$(__LINE__)\n",
        "$(__DATE__)\n",
    ])
    assert ret.outcome==ProcessOutcome.PROCESSED
    lines=ret.output.splitlines()
    assert lines[0]=="1 test.pypp"
    assert lines[2]=="3"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}",lines[3])

def test_file_variable_is_restored():
    macros=MacroTable.from_environment({},property_dirs=[])
    run_case(["$(__FILE__)\n"],"test.pypp\n",macros=macros)
    assert macros[FILE_VAR_NAME]==NO_FILE_NAME

def test_undefined_macro_in_text():
    ret=run_text(["a $(NOPE) b\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="a $(NOPE) b\n"
    assert "test.pypp:1:1: error: Macro \"NOPE\" not defined!" in ret.err

    run_case(["a $(NOPE) b\n"],"a  b\n",config=Config(ignore_undefined=True))

def test_error_directive():
    ret=run_text(["#error  stop here  \n","after\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="after\n"
    assert "error: stop here\n" in ret.err

def test_unknown_directive():
    ret=run_text(["#pragma once\n","x\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="x\n"
    assert "Unknown directive: 'pragma'" in ret.err

    run_case(["#pragma once\n","x\n"],"x\n",config=Config(ignore_unknown_directives=True))

def test_unknown_directive_in_disabled_block():
    ret=run_text(["#if 0\n","#pragma once\n","#endif\n"])
    assert ret.outcome==ProcessOutcome.ERRORS

def test_directive_names_are_case_insensitive():
    run_case([
        "#DEFINE X 1\n",
        "#IfDef X\n",
        "yes\n",
        "#EndIf\n",
    ],"yes\n")

def test_lone_endif():
    ret=run_text(["#endif\n","after\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="after\n"
    assert "#endif without preceding #if!" in ret.err
    assert "One too many '#endif' statements before the end of file \"test.pypp\"!" in ret.err

def test_too_many_endifs():
    ret=run_text(["#endif\n","#endif\n"])
    assert "2 too many '#endif' statements" in ret.err

def test_else_without_if():
    ret=run_text(["#else\n","x\n","#elif 1\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="x\n"
    assert "#else without preceding #if!" in ret.err
    assert "#elif without preceding #if!" in ret.err

def test_missing_endif():
    ret=run_text(["#if 1\n","x\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="x\n"
    assert "Missing one '#endif' before the end of file \"test.pypp\"!" in ret.err

    ret=run_text(["#if 1\n","#elif 0\n","#if 1\n"])
    assert "Missing 2 '#endif' statements before the end of file" in ret.err

def test_expression_error_shows_caret():
    ret=run_text(["#if 1 +\n","x\n","#endif\n","y\n"])
    assert ret.outcome==ProcessOutcome.ERRORS
    assert ret.output=="y\n"

    err_lines=ret.err.splitlines()
    assert err_lines[0]=="       1. #if 1 +"
    assert err_lines[1]==" "*17+"^"
    assert err_lines[2]=="test.pypp:1:8: error: Error in expression: Expecting an expression after +"

def test_division_by_zero_is_a_warning():
    ret=run_case([
        "#if 1 / 0 == 0\n",
        "zero\n",
        "#endif\n",
    ],"zero\n")
    assert ret.log.num_warnings==1
    assert "warning: Divide by zero!" in ret.err

def test_custom_directive_char():
    run_case([
        "@define X 1\n",
        "#keep $(X)\n",
        "@@pass\n",
    ],"#keep 1\n@pass\n",config=Config(directive_char="@"))

def test_command_line_macros():
    config=Config()
    config.add_defines("A=1,B")
    config.add_undefines("C")
    run_case(["$(A)[$(B)]\n"],"1[]\n",config=config,macros=MacroTable({"C":"3"}))

def test_command_line_undefine_of_undefined_macro():
    config=Config()
    config.add_undefines("C")
    with pytest.raises(ConfigError):
        make_preprocessor(config)

    config.ignore_undefined=True
    make_preprocessor(config)

def test_verbose_trace():
    ret=run_case([
        "#if 1\n",
        "x\n",
        "#endif\n",
        "#echo value $(V)\n",
    ],"x\n",macros=MacroTable({"V":"5"}),verbose=True)
    assert ret.out.splitlines()==[
        "  Line     Directive",
        "--------- --------------------------------------",
        "       1. #if 1",
        "       3. #endif",
        "       4. value 5",
    ]

def test_plus_verbose_traces_output_lines():
    ret=run_case(["#if 1\n","x\n","#endif\n","y\n"],"x\ny\n",plus_verbose=True)
    assert "       2.+x" in ret.out.splitlines()
    assert "       4.+y" not in ret.out.splitlines()

def test_echo_is_silent_when_not_verbose():
    ret=run_case(["#echo hi\n"],"")
    assert ret.out==""

def test_directive_classification():
    assert DirectiveKind.classify("ELSEIF")==DirectiveKind.ELIF
    assert DirectiveKind.classify("IfNum")==DirectiveKind.IFNUM
    assert DirectiveKind.classify("pragma")==DirectiveKind.UNKNOWN

    syntax=DirectiveSyntax("#")
    line=syntax.classify("  #  if X > 1")
    assert line.kind==LineKind.DIRECTIVE
    assert line.directive=="if"
    assert line.text==" X > 1"
    assert line.args_offset==7

    assert syntax.classify("#*").kind==LineKind.COMMENT
    assert syntax.classify("##x").kind==LineKind.PASS_THROUGH
    assert syntax.classify("#").kind==LineKind.TEXT
    assert syntax.classify("x # y").kind==LineKind.TEXT

def test_strip_include_brackets():
    assert strip_include_brackets("<a.pypp>")=="a.pypp"
    assert strip_include_brackets("[a]")=="a"
    assert strip_include_brackets("{a}")=="a"
    assert strip_include_brackets("'a'")=="a"
    assert strip_include_brackets("\"a\"")=="a"
    assert strip_include_brackets("<a")=="<a"
    assert strip_include_brackets("a")=="a"

# files

def write(path:Path,*lines:str)->Path:
    path.parent.mkdir(parents=True,exist_ok=True)
    path.write_text("".join(lines))
    return path

def test_process_file(tmp_path:Path):
    source=write(tmp_path/"main.pypp","#define V 1\n","v=$(V)\n")
    preprocessor,_,_=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    assert (tmp_path/"main.py").read_text()=="v=1\n"

def test_include(tmp_path:Path):
    write(tmp_path/"inc.pypp","included $(V) from $(__FILE__)\n")
    source=write(tmp_path/"main.pypp",
        "#define V 1\n",
        "before\n",
        "#include \"inc.pypp\"\n",
        "#include <inc>\n",
        "after $(__FILE__)\n",
    )
    preprocessor,_,_=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    include=tmp_path/"inc.pypp"
    assert (tmp_path/"main.py").read_text()==(
        "before\n"
        f"included 1 from {include}\n"
        f"included 1 from {include}\n"
        f"after {source}\n"
    )

def test_include_defines_are_shared(tmp_path:Path):
    write(tmp_path/"defs.pypp","#define FROM_INCLUDE yes\n")
    source=write(tmp_path/"main.pypp","#include defs\n","$(FROM_INCLUDE)\n")
    preprocessor,_,_=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    assert (tmp_path/"main.py").read_text()=="yes\n"

def test_include_conditionals_are_per_file(tmp_path:Path):
    write(tmp_path/"open.pypp","#if 1\n")
    source=write(tmp_path/"main.pypp","#include open\n","x\n")
    preprocessor,_,err=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.ERRORS
    assert (tmp_path/"main.py").read_text()=="x\n"
    assert "Missing one '#endif'" in err.getvalue()

def test_resolve_include_search_order(tmp_path:Path):
    first=write(tmp_path/"first"/"common.pypp","")
    second=write(tmp_path/"second"/"common.pypp","")
    from_env=write(tmp_path/"env"/"only_env.pypp","")

    config=Config(include_paths=[str(tmp_path/"first"),str(tmp_path/"second")])
    preprocessor,_,_=make_preprocessor(config,environ={"INCLUDE":f"{tmp_path/'nothing'};{tmp_path/'env'}"})

    assert preprocessor.resolve_include("common.pypp")==first
    assert preprocessor.resolve_include("common")==first
    assert preprocessor.resolve_include("only_env")==from_env
    assert preprocessor.resolve_include("common",tmp_path/"second"/"main.pypp")==second

    with pytest.raises(IncludeNotFound) as e:
        preprocessor.resolve_include("missing")
    assert str(e.value)=="Unable to find include file \"missing\""

def test_include_var_name(tmp_path:Path):
    header=write(tmp_path/"inc"/"header.pypp","")
    preprocessor,_,_=make_preprocessor(Config(include_var="MY_INCLUDE"),environ={"MY_INCLUDE":str(tmp_path/"inc")})
    assert preprocessor.resolve_include("header")==header

def test_missing_include_aborts_the_file(tmp_path:Path):
    source=write(tmp_path/"main.pypp","a\n","#include missing\n","b\n")
    preprocessor,_,err=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.FAILED
    assert (tmp_path/"main.py").read_text()=="a\n"
    assert "Unable to find include file \"missing\"" in err.getvalue()

def test_missing_nested_include_fails_only_the_includer(tmp_path:Path):
    write(tmp_path/"mid.pypp","m1\n","#include nothere\n","m2\n")
    source=write(tmp_path/"main.pypp","start\n","#include mid\n","end\n")
    preprocessor,_,_=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.ERRORS
    assert (tmp_path/"main.py").read_text()=="start\nm1\nend\n"

def test_output_same_as_input(tmp_path:Path):
    source=write(tmp_path/"main.txt","x\n")
    preprocessor,_,err=make_preprocessor()

    assert preprocessor.process_file(source)==ProcessOutcome.ERRORS
    assert "must not be the same as input file name" in err.getvalue()

def test_explicit_output_file(tmp_path:Path):
    source=write(tmp_path/"main.pypp","x\n")
    output=tmp_path/"out"/"result.txt"
    output.parent.mkdir()
    preprocessor,_,_=make_preprocessor(Config(output_file=str(output)))

    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    assert output.read_text()=="x\n"

def test_skip_when_output_is_newer(tmp_path:Path):
    source=write(tmp_path/"main.pypp","new\n")
    output=write(tmp_path/"main.py","old\n")
    mtime=source.stat().st_mtime
    os.utime(output,(mtime+100,mtime+100))

    preprocessor,out,_=make_preprocessor(verbose=True)
    assert preprocessor.process_file(source)==ProcessOutcome.SKIPPED
    assert output.read_text()=="old\n"
    assert "Skipping file because output" in out.getvalue()

    preprocessor,_,_=make_preprocessor(Config(always_process=True))
    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    assert output.read_text()=="new\n"

def test_utf8_files(tmp_path:Path):
    source=tmp_path/"main.pypp"
    source.write_text("#define S grüße\n$(S) ✓\n",encoding="utf-8")
    preprocessor,_,_=make_preprocessor(Config(utf8=True))

    assert preprocessor.process_file(source)==ProcessOutcome.PROCESSED
    assert (tmp_path/"main.py").read_text(encoding="utf-8")=="grüße ✓\n"

def test_run_files(tmp_path:Path):
    good=write(tmp_path/"good.pypp","good\n")
    bad=write(tmp_path/"bad.pypp","#endif\n","bad\n")
    preprocessor,_,err=make_preprocessor()

    assert preprocessor.run([str(bad),str(good)])
    assert (tmp_path/"bad.py").read_text()=="bad\n"
    assert (tmp_path/"good.py").read_text()=="good\n"

def test_run_files_without_extension(tmp_path:Path):
    write(tmp_path/"main.pypp","x\n")
    preprocessor,_,err=make_preprocessor()

    assert not preprocessor.run([str(tmp_path/"main")])
    assert (tmp_path/"main.py").read_text()=="x\n"

    assert preprocessor.run([str(tmp_path/"nothere")])
    assert "Cannot find file" in err.getvalue()

def test_run_uses_each_files_extension(tmp_path:Path):
    write(tmp_path/"page.htmlpp","<p>$(__LINE__)</p>\n")
    preprocessor,_,_=make_preprocessor()

    assert not preprocessor.run([str(tmp_path/"page.htmlpp")])
    assert (tmp_path/"page.html").read_text()=="<p>1</p>\n"

def test_run_directories(tmp_path:Path):
    write(tmp_path/"a.pypp","a\n")
    write(tmp_path/"ignored.txt","i\n")
    write(tmp_path/"sub"/"b.pypp","b\n")

    preprocessor,_,_=make_preprocessor(Config(process_as_directory=True))
    assert not preprocessor.run([str(tmp_path)])
    assert (tmp_path/"a.py").read_text()=="a\n"
    assert not (tmp_path/"sub"/"b.py").exists()

    config=Config()
    config.set_recurse_directories(True)
    preprocessor,_,_=make_preprocessor(config)
    assert not preprocessor.run([str(tmp_path)])
    assert (tmp_path/"sub"/"b.py").read_text()=="b\n"

def test_run_directories_with_extensions(tmp_path:Path):
    write(tmp_path/"a.javapp","a\n")
    write(tmp_path/"b.pypp","b\n")

    config=Config()
    config.set_output_ext("java")
    config.process_as_directory=True
    preprocessor,_,_=make_preprocessor(config)

    assert not preprocessor.run([str(tmp_path)])
    assert (tmp_path/"a.java").read_text()=="a\n"
    assert not (tmp_path/"b.py").exists()

def test_strings_in_disabled_blocks_are_not_substituted():
    run_case([
        "#if 0\n",
        "#ifstr '$(UNDEFINED)' == 'x'\n",
        "#endif\n",
        "#ifistr \"$(UNDEFINED)\" != 'x'\n",
        "#endif\n",
        "#endif\n",
        "ok\n",
    ],"ok\n")

def test_modulus_of_infinity():
    run_case([
        "#if 1e999 % 2 == 0\n",
        "zero\n",
        "#else\n",
        "not a number\n",
        "#endif\n",
    ],"not a number\n")

def test_undecodable_file_fails_only_itself(tmp_path:Path):
    bad=tmp_path/"bad.pypp"
    bad.write_bytes(b"ok\n\xff\xfe bad\n")
    good=write(tmp_path/"good.pypp","fine\n")
    preprocessor,_,err=make_preprocessor(Config(utf8=True,always_process=True))

    assert preprocessor.process_file(bad)==ProcessOutcome.FAILED
    assert "Problem while processing file" in err.getvalue()

    assert preprocessor.run([str(bad),str(good)])
    assert (tmp_path/"good.py").read_text()=="fine\n"
