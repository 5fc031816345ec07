from dataclasses import dataclass, field
import typing as tp
import re

from py_tokenizer import NAME_PATTERN

DEFAULT_INPUT_EXT=".pypp"
DEFAULT_OUTPUT_EXT=".py"
DEFAULT_INCLUDE_VAR="INCLUDE"

LIST_SEPARATOR_RE=re.compile(r"[,;]")
DEFINE_RE=re.compile(r"("+NAME_PATTERN+r")=(.*)")
BARE_DEFINE_RE=re.compile(NAME_PATTERN)

class ConfigError(ValueError):
    " invalid option value or combination of options, raised before any file is touched "

def split_list(value:str)->list[str]:
    " split a list given as one value, items are separated by , or ; "
    return LIST_SEPARATOR_RE.split(value)

def normalize_ext(ext:str)->str:
    return ext if ext.startswith(".") else "."+ext

def default_extensions(input_ext:str|None,output_ext:str|None)->tuple[str,str]:
    """
    fill in missing file extensions

    with only an output extension, the input extension is that plus "pp". with only an input extension, the output
    extension is that minus a trailing "pp". with neither, the defaults are used.
    """
    if input_ext is None and output_ext is None:
        return DEFAULT_INPUT_EXT,DEFAULT_OUTPUT_EXT
    if input_ext is None:
        assert output_ext is not None
        return output_ext+"pp",output_ext
    if output_ext is None:
        return input_ext,re.sub(r"pp$","",input_ext)
    return input_ext,output_ext

@dataclass
class Config:
    directive_char:str="#"

    macro_changes:list[tuple[str,str|None]]=field(default_factory=list)
    " command line defines (name,value) and undefines (name,None), applied in order on top of the environment "

    input_ext:str|None=None
    output_ext:str|None=None
    output_file:str|None=None

    include_paths:list[str]=field(default_factory=list)
    include_var:str=DEFAULT_INCLUDE_VAR
    " environment variable holding more include directories "

    ignore_undefined:bool=False
    ignore_unknown_directives:bool=False
    utf8:bool=False

    verbose:bool=False
    plus_verbose:bool=False
    super_verbose:bool=False
    nologo:bool=False

    always_process:bool=False
    process_as_directory:bool=False
    recurse_directories:bool=False

    log_file:str|None=None
    overwrite_log:bool=False

    @property
    def encoding(self)->str|None:
        " encoding of input and output files, None is the platform default "
        return "utf-8" if self.utf8 else None

    def set_directive_char(self,value:str):
        if len(value)!=1:
            raise ConfigError("Directive indicator must be a single character.")
        self.directive_char=value

    def add_defines(self,value:str):
        " one or more `name=value` or `name` items "
        if len(value)==0:
            return

        for item in split_list(value):
            if (m:=DEFINE_RE.fullmatch(item)) is not None:
                self.macro_changes.append((m.group(1),m.group(2)))
            elif BARE_DEFINE_RE.fullmatch(item) is not None:
                self.macro_changes.append((item,""))
            else:
                raise ConfigError(f"Cannot parse define value: '{item}', format should be: var=value or var")

    def add_undefines(self,value:str):
        if len(value)==0:
            return

        for item in split_list(value):
            self.macro_changes.append((item,None))

    def set_input_ext(self,value:str):
        if len(value)==0:
            raise ConfigError("Cannot specify empty input extension value.")
        self.input_ext=normalize_ext(value)

    def set_output_ext(self,value:str):
        if len(value)==0:
            raise ConfigError("Cannot specify empty output extension value.")
        self.output_ext=normalize_ext(value)

    def set_output_file(self,value:str):
        if len(value)==0:
            raise ConfigError("Cannot specify empty output file name.")
        self.output_file=value

    def set_include_paths(self,value:str):
        if len(value)==0:
            raise ConfigError("Cannot specify empty search path list.")
        self.include_paths.extend(split_list(value))

    def set_include_var(self,value:str):
        if len(value)==0:
            raise ConfigError("Cannot specify empty environment variable name for include variable.")
        self.include_var=value

    def set_verbose(self,value:str):
        match value.lower():
            case ""|"true":
                self.verbose=True
            case "+"|"plus":
                self.verbose=self.plus_verbose=True
            case "*"|"super":
                self.verbose=self.super_verbose=True
            case "false":
                self.verbose=self.plus_verbose=self.super_verbose=False
            case _:
                raise ConfigError(f"Undefined 'verbose' option '{value}'.")

    def set_format(self,value:str):
        if value.upper() not in ("UTF8","UTF-8"):
            raise ConfigError(f"Unknown file format: '{value}', valid choices are: 'UTF8' or 'UTF-8'")
        self.utf8=True

    def set_log(self,value:str):
        if len(value)==0:
            raise ConfigError("Log file value must not be empty.")
        self.log_file=value

    def set_recurse_directories(self,value:bool):
        " recursing implies directory mode "
        self.recurse_directories=value
        if value:
            self.process_as_directory=True

    def validate(self,num_file_args:int):
        " check option combinations, given the number of file (or directory) arguments "
        if self.overwrite_log and self.log_file is None:
            raise ConfigError("Overwrite option is not applicable for output to console.")
        if self.output_file is not None and (self.process_as_directory or num_file_args>1):
            raise ConfigError("Setting an output file name only applies to an individual input file.")
        if num_file_args==0:
            raise ConfigError("No input files given.")
