import os
import sys
import typing as tp
from pathlib import Path
import re

from py_util import *
from py_tokenizer import MACRO_REF_RE, Version

PP_VERSION="1.4.1"

DATE_VAR_NAME="__DATE__"
TIME_VAR_NAME="__TIME__"
FILE_VAR_NAME="__FILE__"
LINE_VAR_NAME="__LINE__"
PYTHON_VERSION_VAR_NAME="__PYTHON_VERSION__"
PP_VERSION_VAR_NAME="__PP_VERSION__"

NO_FILE_NAME="-- none --"
" value of __FILE__ outside of any file "

BUILD_PROPERTY_FILES=["build.properties","build.number","version.properties"]
" read in this order, later files override earlier ones "

_CONSTANT_RES=[
    re.compile(r"true",re.IGNORECASE),
    re.compile(r"false",re.IGNORECASE),
    re.compile(r"[0-9]+"),
    re.compile(r"[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?"),
]

def is_constant(value:str)->bool:
    " check if a value is a literal the expression evaluator understands as is (boolean, number, version) "
    for constant_re in _CONSTANT_RES:
        if constant_re.fullmatch(value):
            return True

    return Version.parse(value) is not None

def quote(value:str)->str:
    " quote a value so it round-trips as a string literal, unless it already is a constant "
    if is_constant(value):
        return value

    if "'" in value:
        return f'"{value}"'
    return f"'{value}'"

def read_properties(path:Path)->dict[str,str]:
    """
    read a java style properties file (key=value, key:value or key value per line)

    blank lines and lines starting with # or ! are comments, a trailing backslash continues the value on the next line
    """
    ret:dict[str,str]={}

    logical_line=""
    with path.open(encoding="latin-1") as f:
        for raw_line in f:
            line=raw_line.strip()
            if len(logical_line)==0 and (len(line)==0 or line[0] in "#!"):
                continue

            if line.endswith("\\") and not line.endswith("\\\\"):
                logical_line+=line[:-1]
                continue

            logical_line+=line
            m=re.match(r"((?:\\.|[^=:\s\\])+)\s*[=:\s]\s*(.*)",logical_line)
            if m is not None:
                ret[m.group(1).replace("\\","")]=m.group(2)
            elif len(logical_line)>0:
                ret[logical_line]=""
            logical_line=""

    return ret

class MacroTable:
    """
    flat mutable table of macro name -> raw text value

    one table is shared (by reference) between the expression evaluator and every file activation of a preprocessor
    run, including nested includes.
    """

    def __init__(self,
        values:dict[str,str]|None=None,
        ignore_undefined:bool=False,
        on_error:tp.Callable[[str],None]|None=None,
    ):
        self.values:dict[str,str]=dict(values) if values is not None else {}
        self.ignore_undefined=ignore_undefined
        self.on_error=on_error
        " receives problems found while substituting (undefined or recursive references) "

    @staticmethod
    def from_environment(
        environ:tp.Mapping[str,str]|None=None,
        property_dirs:list[Path]|None=None,
    )->"MacroTable":
        " table seeded with the (quoted) environment, build properties and the version variables "
        if environ is None:
            environ=os.environ

        table=MacroTable({name:quote(value) for name,value in environ.items()})

        table.values[PYTHON_VERSION_VAR_NAME]=".".join(str(v) for v in sys.version_info[:3])
        table.values[PP_VERSION_VAR_NAME]=PP_VERSION

        if property_dirs is None:
            property_dirs=[Path(__file__).parent]

        for property_dir in property_dirs:
            for property_file in BUILD_PROPERTY_FILES:
                property_path=property_dir/property_file
                if not property_path.is_file():
                    continue

                for name,value in read_properties(property_path).items():
                    table.values[name]=quote(value)

        table.values[FILE_VAR_NAME]=NO_FILE_NAME

        return table

    def __contains__(self,name:str)->bool:
        return name in self.values

    def __getitem__(self,name:str)->str:
        return self.values[name]

    def __len__(self)->int:
        return len(self.values)

    def get(self,name:str)->str|None:
        return self.values.get(name)

    def define(self,name:str,value:str="")->str|None:
        " set a macro, returns the previous value, if any "
        previous=self.values.get(name)
        self.values[name]=value
        return previous

    def undefine(self,name:str)->bool:
        " remove a macro, returns False if it was not defined "
        if name not in self.values:
            return False

        del self.values[name]
        return True

    def _report(self,message:str):
        if self.on_error is not None:
            self.on_error(message)

    def substitute(self,line:str,_expanding:tuple[str,...]=())->str:
        """
        replace every $(name) and ${name} in `line` by the value of the macro

        macro values are substituted themselves before being spliced in, so macros defined in terms of other macros
        resolve fully in one call. a reference to a macro that is already being expanded is reported and left as is,
        so are undefined macros (unless undefined macros are ignored, then they expand to an empty string).
        """
        if len(line)==0 or "$" not in line:
            return line

        def replace(m:re.Match)->str:
            name=m.group(1) or m.group(2)

            value=self.values.get(name)
            if value is None:
                if self.ignore_undefined:
                    return ""
                self._report(f"Macro \"{name}\" not defined!")
                return m.group()

            if name in _expanding:
                self._report(f"Recursive reference to macro \"{name}\"")
                return m.group()

            return self.substitute(value,_expanding+(name,))

        return MACRO_REF_RE.sub(replace,line)
