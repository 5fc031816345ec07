import contextlib
import datetime
import os
import re
import typing as tp
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from tqdm import tqdm

from py_util import *
from py_tokenizer import *
from py_macros import *
from py_evaluator import Evaluator, ProcessAs, strip_quotes
from py_config import Config, ConfigError, default_extensions, split_list

DEFINE_VALUE_RE=re.compile(r"("+NAME_PATTERN+r")\s+(.*)")
DEFINE_NAME_RE=re.compile(r"("+NAME_PATTERN+r")\s*")

INCLUDE_BRACKETS={"<":">","[":"]","{":"}"}

class DirectiveKind(str,Enum):
    DEFINE="define"
    UNDEF="undef"

    IF="if"
    IFNUM="ifnum"
    IFSTR="ifstr"
    IFISTR="ifistr"
    IFDEF="ifdef"
    IFNDEF="ifndef"
    ELSE="else"
    ELIF="elif"
    ENDIF="endif"

    INCLUDE="include"
    ERROR="error"
    ECHO="echo"

    UNKNOWN="unknown"

    @staticmethod
    def classify(name:str)->"DirectiveKind":
        " directive names are case insensitive, elseif is another spelling of elif "
        name=name.lower()
        if name=="elseif":
            return DirectiveKind.ELIF

        try:
            return DirectiveKind(name)
        except ValueError:
            return DirectiveKind.UNKNOWN

IF_MODES={
    DirectiveKind.IF:ProcessAs.NORMAL,
    DirectiveKind.IFNUM:ProcessAs.NUMERIC,
    DirectiveKind.IFSTR:ProcessAs.FORCESTRING,
    DirectiveKind.IFISTR:ProcessAs.STRINGINSENSITIVE,
}

class LineKind(str,Enum):
    COMMENT="COMMENT"
    " dropped "
    PASS_THROUGH="PASS_THROUGH"
    " doubled directive character, emitted with one directive character removed "
    DIRECTIVE="DIRECTIVE"
    TEXT="TEXT"

@dataclass
class Line:
    kind:LineKind
    text:str
    " text to emit for PASS_THROUGH and TEXT lines, the arguments for DIRECTIVE lines "

    directive:str=""
    args_offset:int=0
    " column of the arguments in the source line "

class DirectiveSyntax:
    " line classification for a given directive character "

    def __init__(self,directive_char:str="#"):
        c=re.escape(directive_char)
        self.comment_re=re.compile(r"\s*"+c+r"\*.*")
        self.pass_through_re=re.compile(r"\s*"+c+r"("+c+r"\s*\S+.*)")
        self.directive_re=re.compile(r"\s*"+c+r"\s*(\S+)(.*)")

    def classify(self,line:str)->Line:
        if self.comment_re.fullmatch(line) is not None:
            return Line(LineKind.COMMENT,line)

        if (m:=self.pass_through_re.fullmatch(line)) is not None:
            return Line(LineKind.PASS_THROUGH,m.group(1))

        if (m:=self.directive_re.fullmatch(line)) is not None:
            return Line(LineKind.DIRECTIVE,m.group(2),directive=m.group(1),args_offset=m.start(2))

        return Line(LineKind.TEXT,line)

class IfOrigin(str,Enum):
    IF="IF"
    ELIF="ELIF"

@dataclass
class IfFrame:
    output_before:bool
    " output state when the frame was pushed, restored on #endif "
    origin:IfOrigin

class ProcessOutcome(str,Enum):
    PROCESSED="PROCESSED"
    ERRORS="ERRORS"
    " processed to the end, but errors were reported "
    SKIPPED="SKIPPED"
    " output is newer than input "
    FAILED="FAILED"
    " aborted by a resource error (unreadable file, missing include) "

class IncludeNotFound(FileNotFoundError):
    def __init__(self,name:str):
        super().__init__(f"Unable to find include file \"{name}\"")
        self.name=name

@dataclass
class FileContext:
    " state of one file activation, conditionals do not cross file boundaries "
    path:Path

    line_num:int=0
    " 1-based number of the current line "
    frames:list[IfFrame]=field(default_factory=list)
    excess_endifs:int=0
    output:bool=True
    errors:bool=False
    first_directive:bool=True

    @property
    def num_open_ifs(self)->int:
        return sum(1 for frame in self.frames if frame.origin==IfOrigin.IF)

    @property
    def outcome(self)->ProcessOutcome:
        return ProcessOutcome.ERRORS if self.errors else ProcessOutcome.PROCESSED

    def push(self,origin:IfOrigin,result:bool):
        self.frames.append(IfFrame(self.output,origin))
        # a disabled block stays disabled, whatever the condition
        if self.output:
            self.output=result

class Preprocessor:
    """
    line oriented macro and conditional processor

    one instance owns one macro table, shared by every file it processes (including nested includes). conditional
    state is local to each file.
    """

    def __init__(self,
        config:Config|None=None,
        macros:MacroTable|None=None,
        log:Log|None=None,
        environ:tp.Mapping[str,str]|None=None,
    ):
        self.config=config if config is not None else Config()
        self.environ=environ if environ is not None else os.environ

        self.log=log if log is not None else Log(
            verbose=self.config.verbose,
            plus_verbose=self.config.plus_verbose,
            super_verbose=self.config.super_verbose,
        )

        self.macros=macros if macros is not None else MacroTable.from_environment(self.environ)
        self.macros.ignore_undefined=self.config.ignore_undefined
        self.macros.on_error=self._substitution_error

        self.evaluator=Evaluator(self.macros,ignore_undefined=self.config.ignore_undefined,log=self.log)
        self.syntax=DirectiveSyntax(self.config.directive_char)

        self.input_ext,self.output_ext=default_extensions(self.config.input_ext,self.config.output_ext)

        now=datetime.datetime.now().astimezone()
        self.date_str=now.strftime("%Y-%m-%d")
        self.time_str=f"{now:%H:%M:%S}.{now.microsecond//1000:03d} {now:%Z}"

        self.current:FileContext|None=None
        " file activation whose line is being processed "

        self.apply_macro_changes()

    def apply_macro_changes(self):
        for name,value in self.config.macro_changes:
            if value is None:
                if self.macros.undefine(name):
                    if self.log.plus_verbose:
                        self.log.info(f"Undefining '{name}'")
                elif not self.config.ignore_undefined:
                    raise ConfigError(f"Variable '{name}' is not defined in the current environment.")
            else:
                self.macros.define(name,value)
                if self.log.plus_verbose:
                    self.log.info(f"Defining '{name}' to '{value}'")

    # diagnostics

    def report(self,ctx:FileContext,message:str,col:int|None=None,source_line:str|None=None,located:bool=True):
        " report an error in the current line of `ctx`, and mark the file as erroneous "
        ctx.errors=True

        if source_line is not None and col is not None:
            self.log.detail(f"{ctx.line_num:8d}. {source_line}")
            self.log.detail(" "*(10+col)+"^")

        if located:
            self.log.error(f"{SourceLocation(str(ctx.path),ctx.line_num-1,col or 0)}: error: {message}")
        else:
            self.log.error(f"{ctx.path}: error: {message}")

    def warn(self,ctx:FileContext,message:str):
        self.log.warn(f"{SourceLocation(str(ctx.path),ctx.line_num-1,0)}: warning: {message}")

    def _substitution_error(self,message:str):
        if self.current is None:
            self.log.error(f"error: {message}")
        else:
            self.report(self.current,message)

    def trace_line(self,ctx:FileContext,line:str,directive:bool,output:bool):
        if not self.log.verbose:
            return

        if self.log.plus_verbose and output:
            self.log.info(f"{ctx.line_num:8d}.+{line}")
        elif directive:
            self.log.info(f"{ctx.line_num:8d}. {line}")

    # include resolution

    def resolve_include(self,name:str,including_file:Path|None=None)->Path:
        """
        find an include file

        tried in order: the name as given, relative to the including file, in each configured include path and in each
        directory listed in the include environment variable. in each place a name without extension is also tried with
        the input extension appended.
        """
        if len(name)==0:
            raise IncludeNotFound(name)

        candidates=[Path(name)]
        if including_file is not None:
            candidates.append(including_file.parent/name)
        candidates.extend(Path(include_dir)/name for include_dir in self.config.include_paths)

        include_env=self.environ.get(self.config.include_var,"")
        candidates.extend(Path(include_dir)/name for include_dir in split_list(include_env) if len(include_dir)>0)

        for candidate in candidates:
            if candidate.is_file():
                return candidate
            if candidate.suffix=="":
                with_ext=candidate.with_name(candidate.name+self.input_ext)
                if with_ext.is_file():
                    return with_ext

        raise IncludeNotFound(name)

    # file driver

    def output_path_for(self,path:Path)->Path:
        " output file of a top level input file, same as the input when the input extension does not match "
        if self.config.output_file is not None:
            return Path(self.config.output_file)

        name=str(path)
        if not name.endswith(self.input_ext):
            return path
        return Path(name[:-len(self.input_ext)]+self.output_ext)

    @contextlib.contextmanager
    def _file_scope(self,ctx:FileContext)->tp.Iterator[FileContext]:
        previous_file=self.macros.define(FILE_VAR_NAME,str(ctx.path))
        self.macros.define(DATE_VAR_NAME,self.date_str)
        self.macros.define(TIME_VAR_NAME,self.time_str)

        previous_ctx=self.current
        self.current=ctx
        try:
            yield ctx
        finally:
            self.current=previous_ctx
            if previous_file is None:
                self.macros.undefine(FILE_VAR_NAME)
            else:
                self.macros.define(FILE_VAR_NAME,previous_file)

    def process_file(self,path:Path|str,writer:tp.TextIO|None=None)->ProcessOutcome:
        """
        process one file

        without a writer this is a top level file: the output file is derived from the input name, and the file is
        skipped when the output is newer than the input. with a writer this is an include, and output goes to the writer
        of the including file.
        """
        path=Path(path)
        file_type=" (UTF-8)" if self.config.utf8 else ""

        ctx=FileContext(path)
        with self._file_scope(ctx):
            close_writer=False
            try:
                if writer is None:
                    output_path=self.output_path_for(path)
                    if output_path==path:
                        self.report(ctx,f"Output file name must not be the same as input file name: '{path}'!",located=False)
                        return ProcessOutcome.ERRORS

                    if not self.config.always_process and output_path.exists() and output_path.stat().st_mtime>path.stat().st_mtime:
                        if self.log.verbose:
                            self.log.info(f"Skipping file because output '{output_path}' is newer than input '{path}'.")
                        return ProcessOutcome.SKIPPED

                    if self.log.verbose:
                        self.log.info(f"Generating output file '{output_path}'{file_type} from input file '{path}'...")

                    writer=open(output_path,"w",encoding=self.config.encoding)
                    close_writer=True
                elif self.log.verbose:
                    self.log.info(f"Including file '{path}'{file_type}...")

                with open(path,encoding=self.config.encoding) as reader:
                    self.process_lines(reader,writer,ctx)

            except (OSError,UnicodeError) as e:
                self.report(ctx,f"Problem while processing file '{path}': {e}",located=False)
                return ProcessOutcome.FAILED

            finally:
                if close_writer:
                    assert writer is not None
                    writer.close()

        return ctx.outcome

    def process_stream(self,reader:tp.Iterable[str],writer:tp.TextIO,name:str="<stream>")->ProcessOutcome:
        " process lines from any reader into any writer, e.g. for in-memory use "
        ctx=FileContext(Path(name))
        with self._file_scope(ctx):
            try:
                self.process_lines(reader,writer,ctx)
            except (OSError,UnicodeError) as e:
                self.report(ctx,f"Problem while processing '{name}': {e}",located=False)
                return ProcessOutcome.FAILED

        return ctx.outcome

    def process_lines(self,reader:tp.Iterable[str],writer:tp.TextIO,ctx:FileContext):
        for raw_line in reader:
            ctx.line_num+=1
            self.process_line(raw_line.rstrip("\r\n"),writer,ctx)

        self.finish(ctx)

    def process_line(self,source_line:str,writer:tp.TextIO,ctx:FileContext):
        line=self.syntax.classify(source_line)
        match line.kind:
            case LineKind.COMMENT:
                pass
            case LineKind.PASS_THROUGH:
                self.write_text(line.text,writer,ctx,substitute=False)
            case LineKind.DIRECTIVE:
                self.dispatch(line,source_line,writer,ctx)
            case LineKind.TEXT:
                self.write_text(line.text,writer,ctx)

    def write_text(self,text:str,writer:tp.TextIO,ctx:FileContext,substitute:bool=True):
        if not ctx.output:
            return

        if len(text)>0:
            self.macros.define(LINE_VAR_NAME,str(ctx.line_num))
            if substitute:
                text=self.macros.substitute(text)
            writer.write(text)

        if len(ctx.frames)>0:
            self.trace_line(ctx,text,False,True)

        writer.write("\n")

    def finish(self,ctx:FileContext):
        " end of file checks "
        num_open_ifs=ctx.num_open_ifs
        if num_open_ifs==1:
            self.report(ctx,f"Missing one '#endif' before the end of file \"{ctx.path}\"!",located=False)
        elif num_open_ifs>1:
            self.report(ctx,f"Missing {num_open_ifs} '#endif' statements before the end of file \"{ctx.path}\"!",located=False)

        if ctx.excess_endifs==1:
            self.report(ctx,f"One too many '#endif' statements before the end of file \"{ctx.path}\"!",located=False)
        elif ctx.excess_endifs>1:
            self.report(ctx,f"{ctx.excess_endifs} too many '#endif' statements before the end of file \"{ctx.path}\"!",located=False)

    # directives

    def evaluate_condition(self,line:Line,source_line:str,mode:ProcessAs,ctx:FileContext)->bool:
        " a malformed expression is reported and counts as false "
        try:
            result=self.evaluator.evaluate(line.text,mode,start_offset=line.args_offset,eating=not ctx.output)
        except ParseError as e:
            self.report(ctx,f"Error in expression: {e.message}",col=e.offset,source_line=source_line)
            return False

        for message in self.evaluator.diagnostics:
            self.warn(ctx,message)

        return result

    def defined_condition(self,line:Line,ctx:FileContext)->bool:
        name=line.text.strip()
        if ctx.output:
            name=self.macros.substitute(name)
        return name in self.macros

    def dispatch(self,line:Line,source_line:str,writer:tp.TextIO,ctx:FileContext):
        if self.log.verbose and ctx.first_directive:
            self.log.info("  Line     Directive")
            self.log.info("--------- --------------------------------------")
        ctx.first_directive=False

        self.macros.define(LINE_VAR_NAME,str(ctx.line_num))

        kind=DirectiveKind.classify(line.directive)
        match kind:
            case DirectiveKind.IF|DirectiveKind.IFNUM|DirectiveKind.IFSTR|DirectiveKind.IFISTR:
                self.trace_line(ctx,source_line,True,False)
                ctx.push(IfOrigin.IF,self.evaluate_condition(line,source_line,IF_MODES[kind],ctx))

            case DirectiveKind.IFDEF:
                self.trace_line(ctx,source_line,True,False)
                ctx.push(IfOrigin.IF,self.defined_condition(line,ctx))

            case DirectiveKind.IFNDEF:
                self.trace_line(ctx,source_line,True,False)
                ctx.push(IfOrigin.IF,not self.defined_condition(line,ctx))

            case DirectiveKind.ELSE:
                self.trace_line(ctx,source_line,True,False)
                if len(ctx.frames)==0:
                    self.report(ctx,"#else without preceding #if!")
                elif ctx.frames[-1].output_before:
                    ctx.output=not ctx.output

            case DirectiveKind.ELIF:
                self.trace_line(ctx,source_line,True,False)
                if len(ctx.frames)==0:
                    self.report(ctx,f"#{line.directive} without preceding #if!")
                else:
                    # else, then a new if
                    if ctx.frames[-1].output_before:
                        ctx.output=not ctx.output
                    ctx.push(IfOrigin.ELIF,self.evaluate_condition(line,source_line,ProcessAs.NORMAL,ctx))

            case DirectiveKind.ENDIF:
                self.trace_line(ctx,source_line,True,False)
                if len(ctx.frames)==0:
                    self.report(ctx,"#endif without preceding #if!")
                    ctx.excess_endifs+=1
                else:
                    while ctx.frames[-1].origin==IfOrigin.ELIF:
                        _=ctx.frames.pop()
                    ctx.output=ctx.frames.pop().output_before

            case DirectiveKind.DEFINE:
                self.trace_line(ctx,source_line,True,ctx.output)
                if ctx.output:
                    self.define(self.macros.substitute(line.text.strip()),ctx)

            case DirectiveKind.UNDEF:
                self.trace_line(ctx,source_line,True,ctx.output)
                if ctx.output:
                    name=self.macros.substitute(line.text.strip())
                    if self.macros.undefine(name):
                        self.log.trace(f"Undefining '{name}'")
                    elif not self.config.ignore_undefined:
                        self.report(ctx,f"Trying to undefine variable '{name}' which is not defined!")

            case DirectiveKind.INCLUDE:
                self.trace_line(ctx,source_line,True,ctx.output)
                if ctx.output:
                    name=strip_include_brackets(self.macros.substitute(line.text.strip()))
                    # not found aborts this file
                    include_path=self.resolve_include(name,ctx.path)
                    if self.process_file(include_path,writer)!=ProcessOutcome.PROCESSED:
                        ctx.errors=True

            case DirectiveKind.ERROR:
                self.trace_line(ctx,source_line,True,ctx.output)
                if ctx.output:
                    self.report(ctx,line.text.strip())

            case DirectiveKind.ECHO:
                if self.log.verbose:
                    self.log.info(f"{ctx.line_num:8d}. {self.macros.substitute(line.text.strip())}")

            case DirectiveKind.UNKNOWN:
                if not self.config.ignore_unknown_directives:
                    self.trace_line(ctx,source_line,True,False)
                    self.report(ctx,f"Unknown directive: '{line.directive}'")

    def define(self,args:str,ctx:FileContext):
        if (m:=DEFINE_VALUE_RE.fullmatch(args)) is not None:
            name,value=m.group(1),m.group(2)
        elif (m:=DEFINE_NAME_RE.fullmatch(args)) is not None:
            name,value=m.group(1),""
        else:
            self.report(ctx,f"Wrong syntax for '#define': {args}, format should be: #define var value or simply #define var")
            return

        self.macros.define(name,value)
        self.log.trace(f"Defining '{name}' to '{value}'")

    # batch driver

    def list_dir(self,directory:Path)->list[Path]:
        " input files of a directory (and its sub-directories in recursive mode), in sorted order "
        ret=[]
        entries=sorted(directory.iterdir())
        for entry in entries:
            if entry.is_file() and entry.name.endswith(self.input_ext):
                ret.append(entry)

        if self.config.recurse_directories:
            for entry in entries:
                if entry.is_dir():
                    ret.extend(self.list_dir(entry))

        return ret

    def collect_inputs(self,file_args:list[str])->tuple[list[tuple[Path,str,str]],bool]:
        """
        resolve file arguments to (input file, input extension, output extension)

        returns the inputs and whether any argument could not be resolved
        """
        inputs:list[tuple[Path,str,str]]=[]
        errors=False

        if self.config.process_as_directory:
            input_ext,output_ext=default_extensions(self.config.input_ext,self.config.output_ext)
            self.input_ext=input_ext
            for arg in file_args:
                directory=Path(arg)
                if not directory.is_dir():
                    self.log.error(f"error: Cannot find directory '{arg}'!")
                    errors=True
                    continue

                inputs.extend((path,input_ext,output_ext) for path in self.list_dir(directory))

            return inputs,errors

        for arg in file_args:
            input_ext=self.config.input_ext
            if input_ext is None:
                input_ext=Path(arg).suffix or None
            input_ext,output_ext=default_extensions(input_ext,self.config.output_ext)

            path=Path(arg)
            if not path.is_file():
                path=Path(arg+input_ext)
                if not path.is_file():
                    self.log.error(f"error: Cannot find file '{arg}'!")
                    errors=True
                    continue

            inputs.append((path,input_ext,output_ext))

        return inputs,errors

    def run(self,file_args:list[str])->bool:
        " process all file (or directory) arguments, returns True if there were errors "
        if self.log.verbose and not self.config.nologo:
            self.log.info(f"Pre-Processor -- version {PP_VERSION}")

        inputs,errors=self.collect_inputs(file_args)

        progress=tqdm(inputs,desc="Preprocessing",unit="file",disable=self.log.verbose or len(inputs)<2)
        for path,input_ext,output_ext in progress:
            self.input_ext,self.output_ext=input_ext,output_ext
            if self.process_file(path) in (ProcessOutcome.ERRORS,ProcessOutcome.FAILED):
                errors=True

        return errors

def strip_include_brackets(name:str)->str:
    " strip one pair of <>, [], {} or quotes around an include file name "
    if len(name)>0 and name[0] in INCLUDE_BRACKETS:
        if name.endswith(INCLUDE_BRACKETS[name[0]]) and len(name)>=2:
            return name[1:-1]
        return name

    return strip_quotes(name)
